"""Tests for the DigitalOcean key-value tag codec."""

import pytest

from outline_manager.cloud import tags


class TestHexEncoding:
    def test_ascii_to_hex(self):
        assert tags.ascii_to_hex("https://a/") == "68747470733a2f2f612f"

    def test_hex_to_string(self):
        assert tags.hex_to_string("68747470733a2f2f612f") == "https://a/"

    def test_wide_characters_rejected(self):
        with pytest.raises(ValueError):
            tags.ascii_to_hex("snow ☃")

    def test_odd_length_rejected(self):
        with pytest.raises(ValueError):
            tags.hex_to_string("abc")

    def test_non_hex_rejected(self):
        with pytest.raises(ValueError):
            tags.hex_to_string("zz")


class TestKeyValueTags:
    def test_make_tag(self):
        assert tags.make_key_value_tag("apiurl", "x") == "kv:apiurl:78"

    def test_value_lookup(self):
        tag_list = ["shadowbox", tags.make_key_value_tag("apiurl", "https://1.2.3.4:80/p/")]
        assert tags.get_tag_value(tag_list, "apiurl") == "https://1.2.3.4:80/p/"

    def test_prefix_match_is_case_insensitive(self):
        assert tags.get_tag_value(["KV:ApiUrl:78"], "apiurl") == "x"

    def test_key_must_match_whole_segment(self):
        assert tags.get_tag_payload(["kv:apiurlx:78"], "apiurl") is None

    def test_missing_key(self):
        assert tags.get_tag_value(["shadowbox"], "apiurl") is None

    def test_first_matching_tag_wins(self):
        assert tags.get_tag_value(["kv:apiurl:61", "kv:apiurl:62"], "apiurl") == "a"

    def test_undecodable_value_is_absent(self):
        assert tags.get_tag_value(["kv:apiurl:abc"], "apiurl") is None

    def test_payload_is_raw_hex(self):
        assert tags.get_tag_payload(["kv:certsha256:ABCDEF"], "certsha256") == "ABCDEF"
