import base64
import binascii
import os
from typing import Any, Dict, List, Optional

import httpx
from openai import AsyncOpenAI

from codec import SessionKind
from knowledge import KnowledgeBase, PREVIEW_CHARS, knowledge_base
from prompts import COVERAGE_GUIDE, select_instructions
from utils import logger

OPENAI_CHAT_MODEL = os.getenv("OPENAI_CHAT_MODEL", "gpt-4o")
MAX_DOCUMENT_CHARS = 10000

DOCUMENT_SYSTEM_PROMPT = f"""당신은 20년 경력의 보험 전문가입니다. 설계사가 올린 문서를 분석합니다.
{COVERAGE_GUIDE}
## 보험증권인 경우
1. 고객 정보 (이름, 나이, 성별)
2. 보험회사, 상품명, 보험기간
3. 주요 보장 내용과 금액 (표 형식)
4. 월/연 보험료
5. 적정 보장 기준 대비 부족한 보장과 부족 금액
6. 추가로 필요한 보험, 예상 보험료, 고객 설득 포인트

## 보상 청구 서류인 경우
1. 청구 종류와 내용
2. 보상 가능성 (높음/중간/낮음)과 예상 보상 금액
3. 필요한 추가 서류
4. 면책/감액 가능성

구체적인 숫자와 근거를 제시하세요."""

IMAGE_PROMPT = f"""당신은 20년 경력의 보험증권 분석 전문가입니다. 이미지를 정확하게 읽고 분석하세요.

## 읽기 규칙
- 보험가입금액(보장받는 금액, 만원/억원 단위)과 보험료(매월 내는 돈, 원 단위)를 절대 혼동하지 마세요
- 특약별 보험료가 아닌 합계/총보험료/월납보험료를 찾으세요
- "특약"이 없는 항목은 주계약입니다
- 사망보험금이 일반/질병/재해(상해) 중 무엇인지 구분하세요

## 추출 항목
1. 계약자, 피보험자, 수익자
2. 보험회사, 상품명, 증권번호, 계약일, 보험기간, 납입기간, 총 월보험료
3. 주계약과 특약 보장내역 (표 형식: 보장명 | 가입금액 | 보험기간 | 월보험료)
4. 사망/장해 보장 합계
{COVERAGE_GUIDE}
## 현재 vs 적정 비교와 영업 포인트를 정리하세요.
의료비 영수증이면 병원명, 진료일, 상병명, 본인부담금, 실손청구 가능 여부를,
명함이면 이름, 직책, 회사명, 연락처를 정리하세요."""


class AnalysisError(RuntimeError):
    """Raised when the model returned no usable completion."""


def strip_data_url(data: str) -> str:
    """Return the base64 body of a ``data:...;base64,`` URL (or *data* unchanged)."""
    return data.split("base64,", 1)[1] if "base64," in data else data


def is_pdf(file_name: Optional[str], file_type: Optional[str]) -> bool:
    return file_type == "application/pdf" or (file_name or "").lower().endswith(".pdf")


class AnalysisService:
    """Chat and document analysis forwarded to the OpenAI chat completions API."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        knowledge: KnowledgeBase = knowledge_base,
        model: str = OPENAI_CHAT_MODEL,
    ):
        self._client = client
        self.knowledge = knowledge
        self.model = model

    @property
    def client(self) -> AsyncOpenAI:
        # Built lazily so importing the app never requires OPENAI_API_KEY
        if self._client is None:
            self._client = AsyncOpenAI(http_client=httpx.AsyncClient(http2=True))
        return self._client

    async def _complete(self, messages: List[Dict[str, Any]], **kwargs) -> str:
        response = await self.client.chat.completions.create(model=self.model, messages=messages, **kwargs)
        if not response.choices or response.choices[0].message.content is None:
            raise AnalysisError("OpenAI 응답 없음")
        return response.choices[0].message.content

    async def chat(self, message: str, history: Optional[List[Dict[str, Any]]] = None) -> str:
        retrieved = self.knowledge.lookup_context(message) if self.knowledge.enabled else ""
        if retrieved:
            logger.info("📚 [ANALYSIS] Chat answered with knowledge context")
        system_prompt = select_instructions(SessionKind.APP, retrieved_context=retrieved)
        messages = [
            {"role": "system", "content": system_prompt},
            *(history or []),
            {"role": "user", "content": message},
        ]
        logger.info(f"💬 [ANALYSIS] Chat request ({len(message)} chars)")
        return await self._complete(messages, max_tokens=1000, temperature=0.7)

    async def analyze_file(
        self,
        file_data: str,
        file_name: Optional[str] = None,
        file_type: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Analyse a base64 document. PDFs go to the model as a file part."""
        body = strip_data_url(file_data)
        logger.info(f"📄 [ANALYSIS] File analysis requested ({file_type or 'unknown type'})")
        try:
            raw = base64.b64decode(body)
        except (binascii.Error, ValueError) as e:
            raise AnalysisError(f"파일을 읽을 수 없습니다: {e}") from e

        if is_pdf(file_name, file_type):
            user_content: Any = [
                {"type": "text", "text": prompt or "다음 문서를 분석해주세요."},
                {
                    "type": "file",
                    "file": {
                        "filename": file_name or "document.pdf",
                        "file_data": f"data:application/pdf;base64,{body}",
                    },
                },
            ]
            # The model reads the PDF itself; report the document size instead
            text_length = len(raw)
        else:
            text = raw.decode("utf-8", errors="replace")
            text_length = len(text)
            instruction = prompt or "다음 문서를 분석해주세요:"
            user_content = f"{instruction}\n\n{text[:MAX_DOCUMENT_CHARS]}"

        analysis = await self._complete(
            [
                {"role": "system", "content": DOCUMENT_SYSTEM_PROMPT},
                {"role": "user", "content": user_content},
            ],
            max_tokens=3000,
        )
        logger.info("✅ [ANALYSIS] File analysis complete")
        return {"analysis": analysis, "fileName": file_name, "textLength": text_length}

    async def analyze_image(self, image: str, prompt: Optional[str] = None) -> str:
        body = strip_data_url(image)
        logger.info("🖼️ [ANALYSIS] Image analysis requested")
        analysis = await self._complete(
            [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt or IMAGE_PROMPT},
                        {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{body}"}},
                    ],
                }
            ],
            max_tokens=2000,
        )
        logger.info("✅ [ANALYSIS] Image analysis complete")
        return analysis

    def rag_search(self, query: str, top_k: int = 5) -> Dict[str, Any]:
        results = self.knowledge.search(query, top_k)
        logger.info(f"🔍 [RAG] Search returned {len(results)} chunks")
        return {
            "query": query,
            "results": [
                {
                    "book": r.get("book", ""),
                    "score": r["score"],
                    "preview": r["content"][:PREVIEW_CHARS] + "...",
                }
                for r in results
            ],
            "context": self.knowledge.format_context(results),
        }


# Create singleton instance
analysis_service = AnalysisService()
