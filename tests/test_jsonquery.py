import pytest

from errors import QueryError
from jsonquery import extract

RESPONSE = {
    "guid": "A0B1",
    "pin": "123456",
    "recovery_tokens": [
        {"token": "Zmlyc3Q=", "created": "2019-01-01T00:00:00Z"},
        {"token": "c2Vjb25k", "created": "2019-02-01T00:00:00Z"},
    ],
}


def test_top_level_field() -> None:
    assert extract(RESPONSE, "pin") == "123456"


def test_indexed_path() -> None:
    assert extract(RESPONSE, "recovery_tokens[0].token") == "Zmlyc3Q="
    assert extract(RESPONSE, "recovery_tokens[1].created") == "2019-02-01T00:00:00Z"


@pytest.mark.parametrize("path", ["missing", "recovery_tokens[5].token", "pin.value", "guid[0]"])
def test_absent_fields(path: str) -> None:
    with pytest.raises(QueryError):
        extract(RESPONSE, path)


@pytest.mark.parametrize("path", ["", "a..b", "a[x]", "a[0"])
def test_malformed_paths(path: str) -> None:
    with pytest.raises(QueryError):
        extract(RESPONSE, path)
