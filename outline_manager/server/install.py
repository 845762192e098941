"""Install-state polling for freshly created servers.

Nothing on the remote host notifies the manager when its install script
finishes. The script instead publishes its result as provider metadata
(droplet tags, guest attributes, instance tags) and the manager polls that
metadata until it can decide how the install ended:

    UNKNOWN ──► SUCCESS | ERROR | DELETED

The decision is made exactly once. Every site that can decide goes through
:meth:`InstallStateMachine.transition`, which refuses to overwrite a terminal
state.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Callable, Protocol

from ..clock import Clock, LoopClock
from ..exceptions import CloudApiError, DeletedServerError, ServerInstallFailedError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5 * 60
DEFAULT_POLL_INTERVAL_SECONDS = 3


class InstallState(enum.Enum):
    UNKNOWN = "unknown"  # may still be installing
    SUCCESS = "success"  # API URL and certificate fingerprint published
    ERROR = "error"  # install script failed or timed out
    DELETED = "deleted"

    @property
    def is_terminal(self) -> bool:
        return self is not InstallState.UNKNOWN


@dataclass(frozen=True)
class InstallStatus:
    """What a metadata snapshot says about the install."""

    error: str | None = None
    certificate_fingerprint: str | None = None
    api_url: str | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def is_ready(self) -> bool:
        return bool(self.certificate_fingerprint) and bool(self.api_url)


class InstallMetadataSource(Protocol):
    """Provider-specific access to the metadata an install script publishes."""

    def read_install_status(self) -> InstallStatus:
        """Interpret the snapshot already held, without any network call."""
        ...

    async def refresh(self) -> None:
        """Re-fetch the snapshot from the provider. May raise CloudApiError."""
        ...


class InstallStateMachine:
    """Polls an :class:`InstallMetadataSource` until the install outcome is known.

    ``on_success`` receives the ready :class:`InstallStatus` and runs exactly
    once, before the SUCCESS state is recorded and before any waiter wakes.
    If it raises, the install is recorded as ERROR instead.
    """

    def __init__(
        self,
        source: InstallMetadataSource,
        on_success: Callable[[InstallStatus], None],
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        clock: Clock | None = None,
        name: str = "",
    ):
        self._source = source
        self._on_success = on_success
        self._timeout = timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._clock = clock or LoopClock()
        self._name = name

        self._state = InstallState.UNKNOWN
        self._reason: str | None = None
        self._cause: BaseException | None = None
        self._decided = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._started_at: float | None = None

    @property
    def state(self) -> InstallState:
        return self._state

    @property
    def failure_reason(self) -> str | None:
        return self._reason

    def is_install_completed(self) -> bool:
        """True once an outcome (success, error or deletion) has been determined."""
        return self._state.is_terminal

    def start(self) -> None:
        """Evaluate the metadata in hand, then poll in the background if undecided.

        Calling start() more than once has no further effect.
        """
        if self._started_at is not None:
            return
        self._started_at = self._clock.monotonic()
        if self._evaluate():
            return
        self._task = asyncio.get_running_loop().create_task(
            self._poll(), name=f"install-poll:{self._name}"
        )

    def transition(
        self, state: InstallState, reason: str | None = None, cause: BaseException | None = None
    ) -> bool:
        """Record a terminal state unless one is already recorded.

        Returns True if this call made the transition. Wakes every waiter and
        stops polling.
        """
        if not state.is_terminal:
            raise ValueError("Cannot transition back to UNKNOWN")
        if self._state.is_terminal:
            logger.debug(
                "Ignoring %s for %s: install state already %s",
                state.name, self._name, self._state.name,
            )
            return False

        self._state = state
        self._reason = reason
        self._cause = cause
        logger.info(
            "Install state changed to %s%s",
            state.name, f" ({reason})" if reason else "",
            extra={"server_id": self._name, "install_state": state.value},
        )
        self._decided.set()

        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        return True

    def stop(self) -> None:
        """Cancel background polling without recording an outcome.

        The state stays as it is, so waiters on an undecided machine keep
        waiting. Used when a listing replaces this server with a fresh object.
        """
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def mark_deleted(self) -> bool:
        """Force DELETED from outside the polling cycle. No-op once decided."""
        return self.transition(InstallState.DELETED, "Server was deleted")

    async def wait_on_install(self) -> None:
        """Return on SUCCESS; otherwise raise the error matching the outcome.

        Any number of callers may wait concurrently and all observe the same
        outcome. Each receives its own exception instance.
        """
        await self._decided.wait()
        if self._state is InstallState.SUCCESS:
            return
        if self._state is InstallState.DELETED:
            raise DeletedServerError()
        raise ServerInstallFailedError(self._reason or "Server installation failed") from self._cause

    # ── Polling ──────────────────────────────────────────────────────

    def _evaluate(self) -> bool:
        """Apply the current snapshot. Returns True once the outcome is decided."""
        if self._state.is_terminal:
            return True

        status = self._source.read_install_status()
        if status.is_error:
            reason = "Install script reported an error"
            self.transition(InstallState.ERROR, f"{reason}: {status.error}" if status.error else reason)
            return True

        if status.is_ready:
            try:
                self._on_success(status)
            except Exception as exc:
                logger.exception(
                    "Failed to apply install result", extra={"server_id": self._name}
                )
                self.transition(InstallState.ERROR, f"Could not apply install result: {exc}", exc)
                return True
            self.transition(InstallState.SUCCESS)
            return True

        elapsed = self._clock.monotonic() - self._started_at
        if elapsed >= self._timeout:
            self.transition(
                InstallState.ERROR, f"Timed out after {elapsed:.0f}s waiting for installation"
            )
            return True
        return False

    async def _poll(self) -> None:
        try:
            while True:
                await self._clock.sleep(self._poll_interval)
                if self._state.is_terminal:
                    return
                try:
                    await self._source.refresh()
                except CloudApiError as exc:
                    logger.warning(
                        "Failed to refresh install metadata, will retry: %s", exc,
                        extra={"server_id": self._name, "status_code": exc.status_code},
                    )
                if self._evaluate():
                    return
        except Exception as exc:
            logger.exception("Install polling failed", extra={"server_id": self._name})
            self.transition(InstallState.ERROR, f"Install polling failed: {exc}", exc)
