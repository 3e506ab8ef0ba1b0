import pytest

from varnish_exporter.utils import (
    ends_with,
    ends_with_any,
    file_exists,
    starts_with,
    starts_with_any,
    string_property,
)


def test_starts_with_case_sensitive():
    assert starts_with("VBE.boot.default", "VBE.") is True
    assert starts_with("vbe.boot.default", "VBE.") is False


def test_starts_with_ignore_case():
    assert starts_with("Boot.default", "boot.", ignore_case=True) is True
    assert starts_with("ROOT:x", "root:", ignore_case=True) is True
    assert starts_with("default", "boot.", ignore_case=True) is False


def test_starts_with_any():
    prefixes = ["mempool.", "lck."]
    assert starts_with_any("lck.sma.creat", prefixes) is True
    assert starts_with_any("LCK.sma.creat", prefixes) is False
    assert starts_with_any("LCK.sma.creat", prefixes, ignore_case=True) is True
    assert starts_with_any("anything", []) is False


def test_ends_with():
    assert ends_with("VBE.boot.default.happy", ".happy") is True
    assert ends_with("VBE.boot.default.HAPPY", ".happy") is False
    assert ends_with("VBE.boot.default.HAPPY", ".happy", ignore_case=True) is True


def test_ends_with_any():
    suffixes = [".happy", ".conn"]
    assert ends_with_any("VBE.boot.default.conn", suffixes) is True
    assert ends_with_any("VBE.boot.default.req", suffixes) is False
    assert ends_with_any("x.CONN", suffixes, ignore_case=True) is True


def test_file_exists(tmp_path):
    target = tmp_path / "scrape.json"
    assert file_exists(target) is False
    target.write_text("{}")
    assert file_exists(target) is True
    assert file_exists(tmp_path) is True


def test_file_exists_empty_path():
    assert file_exists("") is False


def test_string_property_present():
    data = {"flag": "b", "description": "Happy health probes"}
    assert string_property(data, "flag") == "b"
    assert string_property(data, "description") == "Happy health probes"


def test_string_property_missing():
    assert string_property({"flag": "c"}, "ident") == ""


def test_string_property_wrong_type():
    with pytest.raises(TypeError, match="value is not a string"):
        string_property({"value": 0}, "value")