"""Tests for response assembly, Cache-Control presets and the CORS policy."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from file_proxy.assembler import assemble, content_range, format_header_value
from file_proxy.cache_control import (
    NO_STORE_HEADERS,
    CacheControlPolicy,
    max_age_of,
)
from file_proxy.cors import CORSPolicy
from file_proxy.ranges import ByteRange
from file_proxy.resource import ResourceKey
from file_proxy.storage import DEFAULT_CONTENT_TYPE, ProxiedObject, ServedRange

CACHE_CONTROL = "private, max-age=5"
LAST_MODIFIED = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def make_object(served_range: ServedRange | None = None, **kwargs) -> ProxiedObject:
    return ProxiedObject(
        size=1000,
        content_type="application/vnd.apache.parquet",
        etag='"abc"',
        last_modified=LAST_MODIFIED,
        served_range=served_range,
        **kwargs,
    )


class TestAssemble:
    """Test response assembly from object metadata."""
    def test_full_get(self):
        """Test the headers of a full GET."""
        result = assemble(make_object(), None, is_head=False, cache_control=CACHE_CONTROL)
        assert result.status_code == 200
        assert result.body_present
        assert result.headers == {
            "Content-Type": "application/vnd.apache.parquet",
            "Accept-Ranges": "bytes",
            "Cache-Control": CACHE_CONTROL,
            "ETag": '"abc"',
            "Last-Modified": "Wed, 01 May 2024 12:00:00 GMT",
            "Content-Length": "1000",
        }

    def test_full_head(self):
        """Test the headers of a full HEAD."""
        result = assemble(make_object(), None, is_head=True, cache_control=CACHE_CONTROL)
        assert result.status_code == 200
        assert not result.body_present
        assert result.headers["Content-Length"] == "1000"

    def test_partial_get(self):
        """Test the headers of a partial GET."""
        obj = make_object(ServedRange(offset=100, length=100))
        result = assemble(
            obj, ByteRange(offset=100, length=100), is_head=False, cache_control=CACHE_CONTROL
        )
        assert result.status_code == 206
        assert result.body_present
        assert result.headers["Content-Range"] == "bytes 100-199/1000"
        assert result.headers["Content-Length"] == "100"
        assert result.headers["Accept-Ranges"] == "bytes"

    def test_suffix_uses_storage_reported_offset(self):
        """Test that suffix ranges use the offset storage reported."""
        obj = make_object(ServedRange(offset=900, length=100))
        result = assemble(
            obj, ByteRange(suffix=100), is_head=False, cache_control=CACHE_CONTROL
        )
        assert result.status_code == 206
        assert result.headers["Content-Range"] == "bytes 900-999/1000"

    def test_head_with_range_is_never_partial(self):
        """Test that HEAD with a range is a full response."""
        obj = make_object(ServedRange(offset=0, length=10))
        result = assemble(
            obj, ByteRange(offset=0, length=10), is_head=True, cache_control=CACHE_CONTROL
        )
        assert result.status_code == 200
        assert not result.body_present
        assert "Content-Range" not in result.headers
        assert result.headers["Content-Length"] == "1000"

    def test_range_requested_but_full_object_served(self):
        """Test that a full body from storage is a 200."""
        result = assemble(
            make_object(), ByteRange(offset=0), is_head=False, cache_control=CACHE_CONTROL
        )
        assert result.status_code == 200
        assert "Content-Range" not in result.headers

    def test_optional_metadata_and_default_content_type(self):
        """Test that missing metadata is omitted and the content type defaults."""
        obj = ProxiedObject(size=3)
        result = assemble(obj, None, is_head=False, cache_control=CACHE_CONTROL)
        assert result.headers["Content-Type"] == DEFAULT_CONTENT_TYPE
        assert "ETag" not in result.headers
        assert "Last-Modified" not in result.headers


class TestHeaderFormatting:
    """Test header value formatting."""
    def test_content_range(self):
        """Test the Content-Range format."""
        assert content_range(0, 1, 1) == "bytes 0-0/1"

    def test_naive_datetime_is_treated_as_utc(self):
        """Test that naive timestamps are taken as UTC."""
        assert (
            format_header_value(datetime(2024, 5, 1, 12, 0))
            == "Wed, 01 May 2024 12:00:00 GMT"
        )

    def test_aware_datetime_is_converted_to_gmt(self):
        """Test that aware timestamps are converted to GMT."""
        value = datetime(2024, 5, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        assert format_header_value(value) == "Wed, 01 May 2024 12:00:00 GMT"


class TestCacheControlPolicy:
    """Test the Cache-Control policy."""
    @pytest.fixture
    def policy(self) -> CacheControlPolicy:
        return CacheControlPolicy(
            max_age=5,
            immutable_max_age=31536000,
            immutable_prefixes=["analytics/static/"],
        )

    def test_analytic_resources_get_short_ttl(self, policy):
        """Test that ordinary resources get the short TTL."""
        resource = ResourceKey("analytics", "u1", "analytics/archive/user_id=u1/a.parquet")
        assert policy.for_resource(resource) == "private, max-age=5"

    def test_versioned_resources_are_immutable(self, policy):
        """Test that immutable prefixes get the long TTL."""
        resource = ResourceKey("analytics", "u1", "analytics/static/user_id=u1/v3.parquet")
        assert policy.for_resource(resource) == "private, max-age=31536000, immutable"

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("private, max-age=5", 5),
            ("max-age=0", 0),
            ("public, s-maxage=10", None),
            (NO_STORE_HEADERS["Cache-Control"], 0),
            (None, None),
        ],
    )
    def test_max_age_of(self, value, expected):
        """Test extraction of max-age from a header value."""
        assert max_age_of(value) == expected


class TestCORSPolicy:
    """Test the CORS allow-list."""
    def test_default_denies_every_origin(self):
        """Test that no origin is allowed by default."""
        policy = CORSPolicy()
        headers = policy.headers("https://evil.example.com")
        assert "Access-Control-Allow-Origin" not in headers

    def test_allowed_origin_is_echoed(self):
        """Test that an allowed origin is echoed back."""
        policy = CORSPolicy(["https://app.example.com/"])
        headers = policy.headers("https://app.example.com")
        assert headers["Access-Control-Allow-Origin"] == "https://app.example.com"
        assert headers["Vary"] == "Origin"

    def test_unlisted_origin_is_denied(self):
        """Test that an unlisted origin is denied."""
        policy = CORSPolicy(["https://app.example.com"])
        assert not policy.is_allowed("https://app.example.com.evil.net")
        assert not policy.is_allowed(None)

    def test_wildcard_is_never_honoured(self):
        """Test that a wildcard entry allows nothing."""
        policy = CORSPolicy(["*"])
        assert not policy.is_allowed("https://anything.example.com")
        assert "Access-Control-Allow-Origin" not in policy.headers("https://x.example.com")

    def test_preflight_headers(self):
        """Test the preflight response headers."""
        policy = CORSPolicy(["https://app.example.com"], extra_allow_headers=["X-Internal-User-Id"])
        headers = policy.preflight_headers("https://app.example.com")
        assert headers["Access-Control-Allow-Methods"] == "GET, HEAD, OPTIONS"
        assert headers["Access-Control-Allow-Headers"] == (
            "Authorization, Content-Type, Range, X-Internal-User-Id"
        )
        assert headers["Access-Control-Max-Age"] == "86400"
        assert headers["Access-Control-Allow-Origin"] == "https://app.example.com"
