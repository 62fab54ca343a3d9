import os
import sys

import pytest


# Tests import `services.*` from the web/ folder, like the app does.
WEB_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if WEB_DIR not in sys.path:
    sys.path.insert(0, WEB_DIR)


def _varint(n: int) -> bytes:
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            return bytes(out)


def _len_field(field: int, payload: bytes) -> bytes:
    return _varint((field << 3) | 2) + _varint(len(payload)) + payload


def _varint_field(field: int, value: int) -> bytes:
    return _varint(field << 3) + _varint(value)


def encode_domain(dtype: int, value: str, attrs=()) -> bytes:
    msg = _varint_field(1, dtype) + _len_field(2, value.encode("utf-8"))
    for key in attrs:
        msg += _len_field(3, _len_field(1, key.encode("utf-8")) + _varint_field(2, 1))
    return msg


def encode_geosite(name: str, domains) -> bytes:
    msg = _len_field(1, name.encode("utf-8"))
    for d in domains:
        msg += _len_field(2, encode_domain(*d))
    return msg


def encode_dlc(groups) -> bytes:
    """groups: [(name, [(type, value, attrs), ...]), ...]"""
    out = b""
    for name, domains in groups:
        out += _len_field(1, encode_geosite(name, domains))
    return out


@pytest.fixture
def build_dlc():
    return encode_dlc


@pytest.fixture
def example_dlc() -> bytes:
    # Types: 0 plain, 1 regex, 2 domain, 3 full.
    return encode_dlc(
        [
            ("CN", [(2, "example.cn", ()), (3, "www.example.cn", ())]),
            (
                "geolocation-!cn",
                [
                    (2, "example.com", ()),
                    (0, "keyword", ()),
                    (1, "^ads\\.example\\.net$", ()),
                    (2, "cdn.example.com.cn", ("cn",)),
                ],
            ),
        ]
    )
