"""正文清洗与地址归一化测试"""

import pytest
from handoff.core.cleaning import (
    clean_email_body,
    extract_task_reference,
    normalize_address,
    task_reference,
)

TASK_ID = "01JH5Z8Q3R6V2W4X7Y9ZABCDEF"


class TestCleanEmailBody:
    """引用块、签名与空白处理"""

    def test_quoted_reply_removed(self):
        body = (
            "I'll have it by Friday.\n\n"
            "On Tue, Jan 5 at 3:00 PM, Boss <boss@x.com> wrote:\n"
            "> original text"
        )
        assert clean_email_body(body) == "I'll have it by Friday."

    def test_wrapped_on_wrote_header(self):
        body = "Sounds good.\n\nOn Tue, Jan 5, 2026 at 3:00 PM Boss\n<boss@x.com> wrote:\n> hi"
        assert clean_email_body(body) == "Sounds good."

    def test_outlook_header_removed(self):
        body = "Confirmed.\n\nFrom: Boss <boss@x.com>\nSent: Monday\nSubject: report"
        assert clean_email_body(body) == "Confirmed."

    def test_original_message_separator(self):
        body = "Yes.\n-----Original Message-----\nold stuff"
        assert clean_email_body(body) == "Yes."

    def test_inline_quote_lines_dropped(self):
        body = "> earlier line\nMy answer\n> another quote"
        assert clean_email_body(body) == "My answer"

    @pytest.mark.parametrize(
        "signature",
        ["Thanks,\nDev", "Best regards,\nDev", "--\nDev Smith", "Sent from my iPhone"],
    )
    def test_signature_removed(self, signature):
        assert clean_email_body(f"Will do.\n\n{signature}") == "Will do."

    def test_signature_only_message_kept(self):
        assert clean_email_body("Thanks!") == "Thanks!"

    def test_excess_newlines_collapsed(self):
        assert clean_email_body("a\n\n\n\n\nb") == "a\n\nb"

    def test_crlf_normalized(self):
        assert clean_email_body("line one\r\nline two\r\n") == "line one\nline two"

    @pytest.mark.parametrize("body", [None, "", "   \n  "])
    def test_empty(self, body):
        assert clean_email_body(body) == ""

    def test_leading_header_line_removed(self):
        body = "From: the team, a short note\nWe are on track."
        assert clean_email_body(body) == "We are on track."

    def test_leading_quote_only(self):
        body = "On Tue, Jan 5, 2026 at 3:00 PM Boss <boss@x.com> wrote:\n> Please send the draft"
        assert clean_email_body(body) == ""

    def test_bottom_posted_reply(self):
        body = (
            "On Tue, Jan 5, 2026 at 3:00 PM Boss <boss@x.com> wrote:\n"
            "> Please send the draft\n"
            "\n"
            "Sounds good, will do.\n"
            "\n"
            "-----Original Message-----\n"
            "older thread"
        )
        assert clean_email_body(body) == "Sounds good, will do."


class TestNormalizeAddress:
    """地址归一化"""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("Boss <Boss@X.com>", "boss@x.com"),
            ('"Dev Smith" <dev@example.com>', "dev@example.com"),
            ("  DEV@Example.COM ", "dev@example.com"),
            ("mailto:dev@example.com", "dev@example.com"),
            ("dev@example.com (Dev Smith)", "dev@example.com"),
            ("Dev Smith <DEV@example.com>", "dev@example.com"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_address(raw) == expected


class TestTaskReference:
    """任务引用标记"""

    def test_round_trip_reference(self):
        text = f"Please see {task_reference(TASK_ID)} for details"
        assert extract_task_reference(text) == TASK_ID

    def test_same_reference_twice(self):
        text = f"TASK-{TASK_ID} ... TASK-{TASK_ID}"
        assert extract_task_reference(text) == TASK_ID

    def test_two_different_references_rejected(self):
        text = f"TASK-{TASK_ID} and TASK-01JH5Z8Q3R6V2W4X7Y9ZABCDEG"
        assert extract_task_reference(text) is None

    @pytest.mark.parametrize(
        "text",
        [None, "", "no reference here", "TASK-123", "TASK-01jh5z8q3r6v2w4x7y9zabcdef"],
    )
    def test_no_reference(self, text):
        assert extract_task_reference(text) is None
