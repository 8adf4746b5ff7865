import pytest

from app.services.commands import Command, normalize_text, parse_command, split_command


class TestSlashCommands:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("/complain", Command.START),
            ("/COMPLAIN", Command.START),
            ("  /start  ", Command.START),
            ("/complaint", Command.START),
            ("/submit", Command.SUBMIT),
            ("/done", Command.SUBMIT),
            ("/cancel", Command.CANCEL),
            ("/help", Command.HELP),
            ("/status", Command.STATUS),
        ],
    )
    def test_known(self, text, expected):
        assert parse_command(text) == expected

    def test_first_token_decides(self):
        assert parse_command("/submit please") == Command.SUBMIT

    def test_unknown_slash(self):
        assert parse_command("/refund") == Command.UNKNOWN

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("/complain", ("/complain", "")),
            ("  /complain   my manager assigns unpaid overtime ", ("/complain", "my manager assigns unpaid overtime")),
            ("/submit\nand one more thing", ("/submit", "and one more thing")),
            ("complaint", ("complaint", "")),
            (None, ("", "")),
        ],
    )
    def test_split_keeps_trailing_text(self, text, expected):
        assert split_command(text) == expected


class TestPhraseCommands:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("complaint", Command.START),
            ("Complaint!", Command.START),
            ("ร้องเรียน", Command.START),
            ("ส่ง", Command.SUBMIT),
            ("ยกเลิก", Command.CANCEL),
            ("help", Command.HELP),
            ("ช่วยเหลือ", Command.HELP),
            ("สถานะ", Command.STATUS),
            ("Hello", Command.GREETING),
            ("สวัสดี", Command.GREETING),
        ],
    )
    def test_whole_message_phrases(self, text, expected):
        assert parse_command(text) == expected

    def test_phrase_inside_sentence_is_content(self):
        assert parse_command("I have a complaint about my manager") is None

    def test_plain_text_is_content(self):
        assert parse_command("The air conditioning is broken") is None

    def test_empty(self):
        assert parse_command("") is None
        assert parse_command(None) is None


def test_normalize_text_collapses_whitespace():
    assert normalize_text("  Hello \n  World ") == "hello world"
