"""Tests for body selection and display HTML."""

from dealmail.core.content_builder import (
    NO_CONTENT_NOTICE,
    BodyContent,
    BodyKind,
    EmailRecord,
    load_email_record,
    record_from_email,
    select_body,
    select_record_body,
    to_display_html,
)
from dealmail.core.jmap_client import JmapEmail

from .conftest import make_email


def _email(**kwargs) -> JmapEmail:
    return JmapEmail.model_validate(make_email("M1", "2026-10-01T09:00:00Z", **kwargs))


class TestSelectBody:

    def test_html_preferred_over_text(self):
        body = select_body(_email(html="<b>Sale</b>", text="Sale"))
        assert body == BodyContent("<b>Sale</b>", BodyKind.HTML)

    def test_text_when_no_html(self):
        body = select_body(_email(text="Plain"))
        assert body == BodyContent("Plain", BodyKind.TEXT)

    def test_none_when_no_body(self):
        assert select_body(_email()) is None

    def test_plain_text_listed_under_html_body_stays_text(self):
        data = make_email("M1", "2026-10-01T09:00:00Z", text="5 < 6 <script>x</script>")
        data["htmlBody"] = [{"partId": "2", "type": "text/plain"}]
        email = JmapEmail.model_validate(data)

        body = select_body(email)
        assert body.kind == BodyKind.TEXT

        record = record_from_email(email)
        assert record.html_body is None
        page = to_display_html(body, record)
        assert "<script>x</script>" not in page
        assert "5 &lt; 6 &lt;script&gt;x&lt;/script&gt;" in page

    def test_html_type_match_ignores_case(self):
        data = make_email("M1", "2026-10-01T09:00:00Z", html="<p>Hi</p>")
        data["htmlBody"][0]["type"] = "TEXT/HTML"
        assert select_body(JmapEmail.model_validate(data)).kind == BodyKind.HTML

    def test_empty_html_falls_back_to_text(self):
        body = select_body(_email(html="", text="Plain fallback"))
        assert body == BodyContent("Plain fallback", BodyKind.TEXT)

    def test_unresolvable_part_is_skipped(self):
        data = make_email("M1", "2026-10-01T09:00:00Z", text="Plain")
        data["htmlBody"] = [{"partId": "missing", "type": "text/html"}]
        body = select_body(JmapEmail.model_validate(data))
        assert body.kind == BodyKind.TEXT


class TestDisplayHtml:

    def test_full_document_returned_unchanged(self):
        document = "  <!DOCTYPE html><html><body>Hi</body></html>"
        record = EmailRecord(id="M1", subject="Hi")
        assert to_display_html(BodyContent(document, BodyKind.HTML), record) == document

    def test_html_tag_counts_as_full_document(self):
        document = "<HTML><body>Hi</body></HTML>"
        assert to_display_html(BodyContent(document, BodyKind.HTML), EmailRecord()) == document

    def test_rendering_is_idempotent_for_wrapped_output(self):
        record = EmailRecord(id="M1", subject="Hi")
        first = to_display_html(BodyContent("<p>Hi</p>", BodyKind.HTML), record)
        assert to_display_html(BodyContent(first, BodyKind.HTML), record) == first

    def test_fragment_is_wrapped_with_metadata(self):
        record = record_from_email(_email(html="<p>Fragment</p>"))
        page = to_display_html(select_record_body(record), record)
        assert page.startswith("<!DOCTYPE html>")
        assert "<p>Fragment</p>" in page
        assert "Acme Store" in page
        assert "Weekend Sale" in page

    def test_plain_text_is_escaped_in_pre(self):
        record = EmailRecord(id="M1", text_body="5 < 6 & <b>bold</b>")
        page = to_display_html(select_record_body(record), record)
        assert "<pre>5 &lt; 6 &amp; &lt;b&gt;bold&lt;/b&gt;</pre>" in page
        assert "<b>bold</b>" not in page

    def test_missing_body_shows_notice(self):
        page = to_display_html(None, EmailRecord(id="M1"))
        assert NO_CONTENT_NOTICE in page
        assert "No Subject" in page

    def test_subject_is_escaped(self):
        page = to_display_html(None, EmailRecord(subject="<script>x</script>"))
        assert "<script>x</script>" not in page

    def test_cc_line_only_when_present(self):
        assert "CC:" not in to_display_html(None, EmailRecord())
        record = EmailRecord.model_validate({"cc": [{"email": "friend@example.com"}]})
        assert "friend@example.com" in to_display_html(None, record)


class TestRecords:

    def test_record_from_email_flattens_bodies(self):
        record = record_from_email(_email(html="<b>Sale</b>", text="Sale"))
        data = record.to_dict()
        assert data["id"] == "M1"
        assert data["htmlBody"] == "<b>Sale</b>"
        assert data["textBody"] == "Sale"
        assert data["from"] == [{"name": "Acme Store", "email": "deals@acme.example"}]
        assert "bodyValues" not in data

    def test_missing_subject_is_omitted(self):
        assert "subject" not in record_from_email(_email(subject=None, text="x")).to_dict()

    def test_load_sidecar_record(self):
        record = load_email_record({"id": "M1", "subject": "Hi", "textBody": "Plain", "dealInfo": {}})
        assert record.text_body == "Plain"
        assert select_record_body(record).kind == BodyKind.TEXT

    def test_load_raw_jmap_record(self):
        record = load_email_record(make_email("M9", "2026-10-01T09:00:00Z", html="<i>Raw</i>"))
        assert record.id == "M9"
        assert record.html_body == "<i>Raw</i>"
