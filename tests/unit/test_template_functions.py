"""
Unit tests for built-in template functions.
"""

import re
import time
from datetime import datetime, timedelta
from services.orchestrator.engine.template import TemplateContext, TemplateResolver
from services.orchestrator.engine.template_functions import (
    base64_decode,
    base64_encode,
    date_format,
    format_date,
    get_template_functions,
    json_path,
    list_function_names,
    random_int,
    random_string,
    url_decode,
    url_encode,
)


def test_registry_lists_builtins():
    names = list_function_names()

    for name in ("jsonPath", "uuid", "timestamp", "isoDate", "dateFormat", "dateISO", "dateRFC3339",
                 "randomInt", "randomString", "base64Encode", "base64Decode", "urlEncode", "urlDecode"):
        assert name in names
    assert set(get_template_functions()) == set(names)


def test_uuid_and_timestamp_through_resolver():
    resolver = TemplateResolver()
    context = TemplateContext()

    value = resolver.resolve_string("{{func:uuid()}}", context)
    assert re.match(r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[0-9a-f]{4}-[0-9a-f]{12}$", value)

    before = int(time.time() * 1000)
    stamp = resolver.resolve_string("{{func:timestamp()}}", context)
    assert isinstance(stamp, int)
    assert stamp >= before


def test_iso_dates():
    resolver = TemplateResolver()

    iso = resolver.resolve_string("{{func:isoDate()}}", TemplateContext())
    assert re.match(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$", iso)

    rfc = resolver.resolve_string("{{func:dateRFC3339(1)}}", TemplateContext())
    assert rfc.endswith("Z")

    day = resolver.resolve_string("{{func:dateISO(0)}}", TemplateContext())
    assert re.match(r"^\d{4}-\d{2}-\d{2}$", day)


def test_format_date_tokens():
    moment = datetime(2024, 3, 7, 9, 5, 2)

    assert format_date(moment, "YYYY-MM-DD") == "2024-03-07"
    assert format_date(moment, "DD/MM/YYYY HH:mm:ss") == "07/03/2024 09:05:02"


def test_date_format_offset():
    expected = (datetime.now() + timedelta(days=2)).strftime("%Y%m%d")

    assert date_format(2, "YYYYMMDD") == expected


def test_random_int_bounds():
    for _ in range(50):
        assert 3 <= random_int(3, 5) <= 5
    assert 0 <= random_int() <= 100


def test_random_string_length():
    assert len(random_string()) == 10
    assert len(random_string(4)) == 4
    assert random_string(6).isalnum()


def test_base64_round_trip_and_invalid_input():
    assert base64_encode("user:pass") == "dXNlcjpwYXNz"
    assert base64_decode("dXNlcjpwYXNz") == "user:pass"
    assert base64_decode("***") == ""


def test_url_encoding_matches_component_rules():
    assert url_encode("a b&c=d/é") == "a%20b%26c%3Dd%2F%C3%A9"
    assert url_encode("keep-_.!~*'()") == "keep-_.!~*'()"
    assert url_decode("a%20b%26c") == "a b&c"


def test_json_path():
    data = {"items": [{"id": 1}, {"id": 2}]}

    assert json_path(data, "$.items[1].id") == 2
    assert json_path(data, "$.items[") is None
