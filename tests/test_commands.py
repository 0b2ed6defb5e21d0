"""Tests for @split chat command parsing and execution."""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from split_sync.commands import (
    SplitCommandExecutor,
    is_split_command,
    parse_category,
    parse_split_command,
)
from split_sync.exceptions import InvalidAmountError, NotASplitCommandError


class TestParseSplitCommand:
    def test_description_amount_and_category(self):
        command = parse_split_command("@split Dinner at Luigi's ₹1200 #food")

        assert command.description == "Dinner at Luigi's"
        assert command.amount == Decimal("1200")
        assert command.category == "Food"
        assert command.mentions == []
        assert command.use_all is False

    def test_mentions_in_order(self):
        command = parse_split_command("@split taxi $42.50 @bob @carol")

        assert command.description == "taxi"
        assert command.amount == Decimal("42.50")
        assert command.mentions == ["bob", "carol"]

    def test_trailing_punctuation_and_repeats(self):
        command = parse_split_command("@split pizza 30 with @bob, @carol and @bob.")

        assert command.mentions == ["bob", "carol"]
        assert command.description == "pizza with , and"

    def test_digits_in_usernames_are_not_the_amount(self):
        command = parse_split_command("@split snacks @bob99 12.5")

        assert command.amount == Decimal("12.5")
        assert command.mentions == ["bob99"]

    def test_all_mention(self):
        command = parse_split_command("@split 25 @all")

        assert command.use_all is True
        assert command.mentions == []
        assert command.description == "Split Bill"

    def test_trigger_is_case_insensitive(self):
        assert parse_split_command("  @SPLIT Lunch 12").amount == Decimal("12")

    @pytest.mark.parametrize("text", ["hello @split 10", "@splitter 10", ""])
    def test_not_a_command(self, text):
        assert is_split_command(text) is False
        with pytest.raises(NotASplitCommandError):
            parse_split_command(text)

    def test_missing_amount(self):
        with pytest.raises(InvalidAmountError, match="Amount is required"):
            parse_split_command("@split dinner @bob")

    def test_zero_amount(self):
        with pytest.raises(InvalidAmountError, match="positive"):
            parse_split_command("@split nothing 0")

    def test_unknown_hashtag_falls_back(self):
        assert parse_category("brunch #yum") == "Other"
        assert parse_category("bus #Transport") == "Transport"


class TestSplitCommandExecutor:
    """Every outcome is a CommandResult, never an exception."""

    @pytest.fixture
    def executor(self, service, db):
        return SplitCommandExecutor(service, db)

    def test_group_command_shares_with_everyone(self, executor, group):
        result = executor.execute("@split Dinner 90 #food", "u-alice", group_id="g-trip")

        assert result.success is True
        assert result.split_bill.participant_ids == ["u-alice", "u-bob", "u-carol"]
        assert result.split_bill.category == "Food"
        assert result.message.startswith('Alice split "Dinner": USD 90.00 between 3 people')
        assert "  Bob: USD 30.00 (pending)" in result.message

    def test_group_command_with_mentions(self, executor, group):
        result = executor.execute("@split Taxi 20 @bob", "u-alice", group_id="g-trip")

        assert result.split_bill.participant_ids == ["u-alice", "u-bob"]

    def test_all_overrides_mentions(self, executor, group):
        result = executor.execute("@split Taxi 30 @bob @all", "u-alice", group_id="g-trip")

        assert len(result.split_bill.participants) == 3

    def test_direct_chat_defaults_to_counterpart(self, executor, users):
        result = executor.execute("@split Coffee 8", "u-alice", counterpart_id="u-bob")

        assert result.success is True
        assert result.split_bill.group_id is None
        assert result.split_bill.participant_ids == ["u-alice", "u-bob"]

    def test_direct_chat_without_anyone(self, executor, users):
        result = executor.execute("@split Coffee 8", "u-alice")

        assert result.success is False
        assert result.message.startswith("Could not split bill: Mention who to split with")

    def test_unknown_mention(self, executor, group):
        result = executor.execute("@split Taxi 20 @zed", "u-alice", group_id="g-trip")

        assert result.success is False
        assert "Unknown participant(s): @zed" in result.message

    def test_not_a_command(self, executor, group):
        result = executor.execute("lunch was great", "u-alice", group_id="g-trip")

        assert result.success is False
        assert result.split_bill is None

    def test_unexpected_error_is_reported(self, db, group):
        service = MagicMock()
        service.create_split_bill.side_effect = RuntimeError("boom")
        executor = SplitCommandExecutor(service, db)

        result = executor.execute("@split Taxi 20", "u-alice", group_id="g-trip")

        assert result.success is False
        assert result.message == "Failed to create split bill: boom"
