"""Tests for reply matching against expected entries."""

import pytest

from replytrack.core.errors import TaskValidationError
from replytrack.core.text_match import matches_expected, normalize_expected, normalize_text
from replytrack.domain.task import ExpectedEntry, ParsedResponse, SendAction


def response(key: str = "", text: str = "") -> ParsedResponse:
    return ParsedResponse(key=key, text=text)


@pytest.mark.unit
def test_normalize_text() -> None:
    assert normalize_text("  Manhã   DE\tSol ") == "manha de sol"
    assert normalize_text(None) == ""


@pytest.mark.unit
class TestMatchesExpected:
    def test_exact_key(self) -> None:
        expected = [ExpectedEntry(key="yes"), ExpectedEntry(key="no")]

        assert matches_expected(expected, response(key="NO")) is expected[1]

    def test_alias_equal_or_contained_in_text(self) -> None:
        expected = [ExpectedEntry(key="yes", aliases=["Sim"])]

        assert matches_expected(expected, response(text="SÍM")) is expected[0]
        assert matches_expected(expected, response(text="sim, pode ser")) is expected[0]

    def test_alias_contained_in_key(self) -> None:
        expected = [ExpectedEntry(key="confirm", aliases=["ok"])]

        assert matches_expected(expected, response(key="btn_ok_1")) is expected[0]

    def test_first_entry_wins(self) -> None:
        expected = [ExpectedEntry(key="a", aliases=["sim"]), ExpectedEntry(key="b", aliases=["sim"])]

        assert matches_expected(expected, response(text="sim")) is expected[0]

    def test_no_match(self) -> None:
        assert matches_expected([ExpectedEntry(key="yes", aliases=["Sim"])], response(text="não")) is None
        assert matches_expected([ExpectedEntry(key="yes")], response()) is None


@pytest.mark.unit
class TestNormalizeExpected:
    def test_trims_and_drops_empty_entries(self) -> None:
        items = normalize_expected(
            [{"key": " yes ", "aliases": [" Sim ", "", None]}, {"key": "", "aliases": []}, "junk", {"aliases": ["x"]}]
        )

        assert [(item.key, item.aliases) for item in items] == [("yes", ["Sim"]), ("", ["x"])]

    def test_actions_are_typed(self) -> None:
        items = normalize_expected([{"key": "yes", "action": {"mode": "send", "payload": {"text": "ok"}}}])

        assert isinstance(items[0].action, SendAction)

    def test_invalid_action_raises(self) -> None:
        with pytest.raises(TaskValidationError):
            normalize_expected([{"key": "yes", "action": {"mode": "teleport"}}])
