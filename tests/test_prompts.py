from codec import SessionKind
from prompts import (
    AGENT_NAME,
    APP_BASE,
    fill_template,
    format_analysis_context,
    phone_template_key,
    select_instructions,
)
from services.call_store import CallContext


class TestAppVariants:
    def test_base_variant_has_no_placeholders(self):
        text = select_instructions(SessionKind.APP)
        assert "{{" not in text
        assert AGENT_NAME in text
        assert "참고 자료" not in text
        assert "분석된 서류" not in text

    def test_knowledge_variant(self):
        text = select_instructions(SessionKind.APP, retrieved_context="[참고자료 1] 출처: 금융집짓기")
        assert "[참고자료 1] 출처: 금융집짓기" in text
        assert "분석된 서류" not in text

    def test_document_variant(self):
        text = select_instructions(SessionKind.APP, document_context="=== [1번 파일] a.pdf ===\n암진단금 3천만원")
        assert "암진단금 3천만원" in text
        assert "## 참고 자료" not in text

    def test_both_variant(self):
        text = select_instructions(SessionKind.APP, retrieved_context="RAG-TEXT", document_context="DOC-TEXT")
        assert "RAG-TEXT" in text
        assert "DOC-TEXT" in text
        assert text.index("RAG-TEXT") < text.index("DOC-TEXT")

    def test_is_deterministic(self):
        assert select_instructions(SessionKind.APP, document_context="x") == select_instructions(
            SessionKind.APP, document_context="x"
        )


class TestTelephonyTemplate:
    def test_booking_call_substitutes_context(self):
        context = CallContext(customer_name="김철수", purpose="상담예약")
        text = select_instructions(SessionKind.TELEPHONY, call_context=context)
        assert "전화 목적: 상담예약" in text
        assert "김철수" in text
        assert "{{" not in text

    def test_explicit_scenario_wins_over_context(self):
        context = CallContext(customer_name="김철수", purpose="상담예약")
        text = select_instructions(SessionKind.TELEPHONY, scenario="보장분석 상담", call_context=context)
        assert "전화 목적: 보장분석 상담" in text

    def test_renewal_scenario_uses_policy_expiry(self):
        context = CallContext(customer_name="이영희", purpose="자동차보험 만기 안내", policy_expiry="2026-12-01")
        text = select_instructions(SessionKind.TELEPHONY, call_context=context)
        assert "2026-12-01" in text
        assert "만기" in text

    def test_without_any_context_defaults_purpose(self):
        text = select_instructions(SessionKind.TELEPHONY)
        assert "전화 목적: 상담예약" in text
        assert "{{" not in text

    def test_template_key(self):
        assert phone_template_key("만기 안내") == "renewal"
        assert phone_template_key("Renewal notice") == "renewal"
        assert phone_template_key("상담예약") == "booking"
        assert phone_template_key(None) == "booking"


def test_fill_template_leaves_unknown_tokens_and_blanks_missing_values():
    text = fill_template("{{A}}-{{B}}-{{C}}", {"A": "x", "B": None})
    assert text == "x--{{C}}"


def test_app_base_keeps_agent_placeholder_until_filled():
    assert "{{AGENT_NAME}}" in APP_BASE


def test_format_analysis_context():
    text = format_analysis_context(
        [
            {"fileName": "증권.pdf", "analysis": "사망 1억"},
            {"fileName": "영수증.jpg", "analysis": "본인부담 3만원"},
        ]
    )
    assert text == "=== [1번 파일] 증권.pdf ===\n사망 1억\n\n=== [2번 파일] 영수증.jpg ===\n본인부담 3만원"
    assert format_analysis_context([]) == ""
    assert format_analysis_context(None) == ""
