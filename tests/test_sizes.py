from __future__ import annotations

import pytest

from memguard import MemorySizeError, format_bytes, parse_memory


@pytest.mark.parametrize(
    ("n", "expected"),
    [
        (0, "0 B"),
        (1023, "1023 B"),
        (1024, "1.00 KB"),
        (1536, "1.50 KB"),
        (1024**2 - 1, "1024.00 KB"),
        (1024**2, "1.00 MB"),
        (200 * 1024**2, "200.00 MB"),
        (1024**3, "1.00 GB"),
        (16_000_000_000, "14.90 GB"),
        (5 * 1024**4, "5120.00 GB"),
    ],
)
def test_format_bytes(n, expected):
    assert format_bytes(n) == expected


def test_format_bytes_unit_never_shrinks_as_bytes_grow():
    order = ["B", "KB", "MB", "GB"]
    samples = sorted({0, 1, 1023, 1024, 1025, 1024**2 - 1, 1024**2, 1024**3 - 1, 1024**3, 2**63})
    units = [order.index(format_bytes(n).split()[-1]) for n in samples]
    assert units == sorted(units)


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("16GB", 16_000_000_000),
        ("16GiB", 16 * 1024**3),
        ("1000MB", 1_000_000_000),
        ("100MiB", 100 * 1024**2),
        ("1KB", 1000),
        ("1KiB", 1024),
        ("512", 512),
        ("512B", 512),
        ("0", 0),
        ("16 gb", 16_000_000_000),
        ("  2k ", 2000),
        ("1.5KB", 1500),
        ("1.5KiB", 1536),
        ("0.3B", 0),
        ("2TB", 2 * 1000**4),
        ("1EB", 1000**6),
    ],
)
def test_parse_memory(text, expected):
    assert parse_memory(text) == expected


@pytest.mark.parametrize("text", ["", "   ", "GB", "abc", "-1GB", "16XB", "1e3", "16 G B", "1..5MB"])
def test_parse_memory_rejects_malformed_sizes(text):
    with pytest.raises(MemorySizeError):
        parse_memory(text)


def test_parse_memory_rejects_sizes_beyond_64_bits():
    assert parse_memory("18446744073709551615") == 2**64 - 1
    assert parse_memory("15EiB") == 15 * 1024**6
    with pytest.raises(MemorySizeError, match="too large"):
        parse_memory("16EiB")
    with pytest.raises(MemorySizeError, match="too large"):
        parse_memory("18446744073709551616")


def test_memory_size_error_is_a_value_error():
    assert issubclass(MemorySizeError, ValueError)
