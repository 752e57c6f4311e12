"""Instruction templates for the realtime assistant and the composer that picks one.

Templates use ``{{PLACEHOLDER}}`` tokens. ``select_instructions`` is a pure
table lookup plus substitution; it never talks to the network.
"""

import os
from typing import Any, Dict, List, Mapping, Optional

from codec import SessionKind
from services.call_store import CallContext

AGENT_NAME = os.getenv("AGENT_NAME", "지니")
DEFAULT_SCENARIO = "상담예약"

COVERAGE_GUIDE = """
## 적정 보장 기준 (연봉 기준)
- 사망/장해보험금: 연봉 × 3 + 부채
- 암진단금: 연봉 × 2 (최소 1억)
- 뇌혈관/심혈관 진단금: 각 연봉 × 1
- 실손의료비: 5,000만원
- 정보가 없으면 연봉 5,000만원, 부채 0원으로 가정
- 월 보험료: 기혼자 소득의 10%, 미혼자 5% 내외
"""

APP_RULES = """
## 규칙
1. 한국어로만 답하세요
2. 설계사님을 "대표님"이라고 부르세요
3. 음성 대화이므로 1-3문장으로 짧게 답하세요
4. 구체적인 숫자와 근거를 제시하세요
"""

APP_BASE = f"""당신은 "{{{{AGENT_NAME}}}}"입니다. 보험설계사의 AI 개인비서이자 20년 경력의 보험 전문가입니다.
영업, 보상 업무, 고객 상담과 증권 분석을 돕습니다.
{COVERAGE_GUIDE}
{APP_RULES}
- 전화 요청에는 "알겠습니다"라고만 답하세요. 전화는 앱에서 처리합니다."""

APP_WITH_KNOWLEDGE = APP_BASE + """

## 참고 자료
{{RAG_CONTEXT}}

위 자료를 근거로 답하고, 인용할 때는 출처(책 제목)를 밝히세요."""

APP_WITH_DOCUMENT = APP_BASE + """

## 분석된 서류
대표님이 업로드하신 서류의 분석 내용입니다.

{{ANALYSIS_CONTEXT}}

보험증권이면 보장 현황, 부족한 항목과 권장 금액, 추천 상품과 예상 보험료를 안내하세요.
보상 서류이면 보상 가능성, 추가 필요 서류, 면책/감액 가능성을 안내하세요."""

APP_WITH_BOTH = APP_BASE + """

## 참고 자료
{{RAG_CONTEXT}}

## 분석된 서류
{{ANALYSIS_CONTEXT}}

참고 자료와 보장 기준으로 서류를 분석하고 부족한 보장을 금액으로 제시하세요."""

PHONE_RULES = """
## 최우선 규칙
1. 고객이 말하는 중에는 절대 끊지 마세요
2. 시간이나 날짜를 먼저 제안하지 말고 고객에게 물어보세요
3. 고객의 질문에는 반드시 답하세요
4. 고객을 항상 "고객님"이라고 부르세요
"""

PHONE_BOOKING = f"""당신은 "{{{{AGENT_NAME}}}}"입니다. 오원트금융연구소의 AI 전화비서로, 오상열 대표님을 대신해 상담 일정을 잡기 위해 전화했습니다.
{PHONE_RULES}
## 대화 순서
1. 인사: "안녕하세요, 고객님! 저는 오원트금융연구소 AI비서 {{{{AGENT_NAME}}}}입니다. 오상열 대표님 대신 연락드렸습니다."
2. 통화 가능 여부를 묻고, 바쁘시면 다시 연락드릴 때를 여쭤보세요
3. 오전/오후, 요일, 시간을 하나씩 물어보세요
4. 상담 장소(전화, 카페, 사무실 등)를 물어보세요
5. 요일, 시간, 장소를 복창하고 확인받으세요
6. 마무리: "[요일] [시간] [장소] 상담 예약 완료되었습니다. 좋은 하루 되세요!"
7. 고객이 인사하면 "네, 안녕히 계세요!"라고만 하세요. 통화는 자동으로 종료됩니다.

## 현재 통화 정보
전화 목적: {{{{CALL_PURPOSE}}}}
고객 이름(부르지 말 것): {{{{CUSTOMER_NAME}}}}"""

PHONE_RENEWAL = f"""당신은 "{{{{AGENT_NAME}}}}"입니다. 오원트금융연구소의 AI 전화비서로, 보험 만기를 안내하기 위해 전화했습니다.
{PHONE_RULES}
## 대화 순서
1. 인사 후 보험 만기 안내 전화임을 밝히세요
2. 만기일({{{{POLICY_EXPIRY}}}})을 안내하고 갱신 상담을 원하시는지 물어보세요
3. 원하시면 상담 가능한 요일과 시간을 물어보고 복창하세요
4. 마무리: "상담 예약 완료되었습니다. 좋은 하루 되세요!"

## 현재 통화 정보
전화 목적: {{{{CALL_PURPOSE}}}}
고객 이름(부르지 말 것): {{{{CUSTOMER_NAME}}}}"""

APP_TEMPLATES = {
    (False, False): APP_BASE,
    (True, False): APP_WITH_KNOWLEDGE,
    (False, True): APP_WITH_DOCUMENT,
    (True, True): APP_WITH_BOTH,
}

PHONE_TEMPLATES = {
    "booking": PHONE_BOOKING,
    "renewal": PHONE_RENEWAL,
}


def fill_template(template: str, values: Mapping[str, Optional[str]]) -> str:
    """Replace ``{{KEY}}`` for each key in *values*; unknown tokens are left as-is."""
    for key, value in values.items():
        template = template.replace("{{" + key + "}}", value or "")
    return template


def phone_template_key(scenario: Optional[str]) -> str:
    if scenario and ("만기" in scenario or "갱신" in scenario or "renewal" in scenario.lower()):
        return "renewal"
    return "booking"


def format_analysis_context(context_list: Optional[List[Dict[str, Any]]]) -> str:
    if not context_list:
        return ""
    return "\n\n".join(
        f"=== [{idx}번 파일] {ctx.get('fileName', '')} ===\n{ctx.get('analysis', '')}"
        for idx, ctx in enumerate(context_list, start=1)
    )


def select_instructions(
    session_kind: SessionKind,
    scenario: Optional[str] = None,
    retrieved_context: str = "",
    document_context: str = "",
    call_context: Optional[CallContext] = None,
) -> str:
    if session_kind is SessionKind.TELEPHONY:
        purpose = scenario or (call_context.purpose if call_context else None) or DEFAULT_SCENARIO
        template = PHONE_TEMPLATES[phone_template_key(purpose)]
        return fill_template(
            template,
            {
                "AGENT_NAME": AGENT_NAME,
                "CALL_PURPOSE": purpose,
                "CUSTOMER_NAME": call_context.customer_name if call_context else "",
                "POLICY_EXPIRY": (call_context.policy_expiry if call_context else None) or "미확인",
            },
        )

    template = APP_TEMPLATES[(bool(retrieved_context), bool(document_context))]
    return fill_template(
        template,
        {
            "AGENT_NAME": AGENT_NAME,
            "RAG_CONTEXT": retrieved_context,
            "ANALYSIS_CONTEXT": document_context,
        },
    )
