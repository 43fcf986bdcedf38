from datetime import date, datetime

import numpy as np
import pandas as pd
import pytest

from processing.common_code.utils import (
    REDACTED, decode_transport, encode_transport, is_missing,
    parse_date, parse_int, parse_timestamp
)


@pytest.mark.parametrize("value", [None, "", np.nan, pd.NaT])
def test_missing_values(value):
    assert is_missing(value)
    assert encode_transport(value) is None


def test_zero_and_whitespace_are_not_missing():
    assert not is_missing(0)
    assert not is_missing(" ")


def test_transport_encoding_is_plain_base64_of_utf8():
    assert encode_transport("Über") == "w5xiZXI="
    assert decode_transport("w5xiZXI=") == "Über"
    assert encode_transport(b"\x00\xff") == "AP8="


def test_transport_encoding_of_dates_and_numbers():
    assert decode_transport(encode_transport(date(2024, 4, 1))) == "2024-04-01"
    assert decode_transport(encode_transport(42)) == "42"
    assert decode_transport(encode_transport(REDACTED)) == "[REDACTED]"


@pytest.mark.parametrize("value, expected", [
    ("5", 5), (" 12 ", 12), (7, 7), ("3.0", 3), (None, None), ("", None), ("abc", None), (np.nan, None),
])
def test_parse_int(value, expected):
    assert parse_int(value) == expected


@pytest.mark.parametrize("value, expected", [
    ("2024-03-01 09:15:00", datetime(2024, 3, 1, 9, 15)),
    ("2024-03-01T09:15:00", datetime(2024, 3, 1, 9, 15)),
    ("2024-03-01", datetime(2024, 3, 1)),
    (pd.Timestamp("2024-03-01 09:15"), datetime(2024, 3, 1, 9, 15)),
    (date(2024, 3, 1), datetime(2024, 3, 1)),
    ("not a date", None),
    (None, None),
])
def test_parse_timestamp(value, expected):
    assert parse_timestamp(value) == expected


def test_parse_date_truncates_time():
    assert parse_date("2024-03-01 23:59:59") == date(2024, 3, 1)
    assert parse_date(None) is None
