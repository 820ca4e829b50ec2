"""Prompt templates and canned replies in English and Vietnamese."""

from __future__ import annotations

from typing import Iterable, Sequence

from ..conversations.schemas import Citation
from ..knowledge.models import Passage

SYSTEM_PROMPT = """You are a helpful assistant that answers questions based ONLY on the provided context from help articles.

IMPORTANT RULES:
1. Answer ONLY using information from the provided context.
2. If the answer is not in the context, explicitly say "I don't have that information in my knowledge base".
3. Never make up information or use knowledge outside the provided context.
4. Refer to the sources you used by their number, e.g. [1].
5. Be concise and helpful.
6. ANSWER IN THE SAME LANGUAGE AS THE USER'S QUESTION. If the user writes in English, answer in English even when the context is in Vietnamese and translate the information you use. If the user writes in Vietnamese, answer in Vietnamese."""

HANDOFF_REPLY = {
    "en": (
        "I understand you'd like to speak with a human support agent. I'll create "
        "a support ticket for you right away. Please provide your name and email "
        "so we can contact you."
    ),
    "vi": (
        "Tôi hiểu bạn muốn được kết nối với nhân viên hỗ trợ. Tôi sẽ tạo ticket hỗ "
        "trợ cho bạn ngay bây giờ. Vui lòng cung cấp tên và email của bạn để chúng "
        "tôi có thể liên hệ."
    ),
}

CLARIFY_WITH_TOPICS = {
    "en": (
        "I found some articles that might be relevant: {topics}. However, I want to "
        "make sure I understand your question correctly. Could you provide more "
        "specific details about what you need help with?"
    ),
    "vi": (
        "Tôi tìm thấy một số bài viết có thể liên quan: {topics}. Tuy nhiên, tôi "
        "muốn chắc chắn rằng tôi hiểu đúng câu hỏi của bạn. Bạn có thể cung cấp "
        "thêm chi tiết cụ thể về vấn đề bạn cần trợ giúp không?"
    ),
}

CLARIFY_WITHOUT_TOPICS = {
    "en": (
        "I want to make sure I understand your question correctly. Could you "
        "provide more details about what you're looking for?"
    ),
    "vi": (
        "Tôi muốn chắc chắn rằng tôi hiểu đúng câu hỏi của bạn. Bạn có thể cung "
        "cấp thêm chi tiết về những gì bạn đang tìm kiếm không?"
    ),
}

GENERATION_APOLOGY = {
    "en": (
        "Sorry, I couldn't put together an answer just now. Please try again in a "
        "moment, or ask to talk to a human and we'll connect you with our team."
    ),
    "vi": (
        "Xin lỗi, hiện tại tôi chưa thể trả lời câu hỏi này. Vui lòng thử lại sau "
        "ít phút, hoặc yêu cầu nói chuyện với nhân viên để được hỗ trợ."
    ),
}


def _pick(table: dict[str, str], language: str) -> str:
    return table.get(language, table["en"])


def handoff_reply(language: str) -> str:
    return _pick(HANDOFF_REPLY, language)


def generation_apology(language: str) -> str:
    return _pick(GENERATION_APOLOGY, language)


def clarifying_question(titles: Iterable[str], language: str) -> str:
    """Ask the user to narrow the question, naming the candidate articles."""

    unique: list[str] = []
    for title in titles:
        if title and title not in unique:
            unique.append(title)
    if not unique:
        return _pick(CLARIFY_WITHOUT_TOPICS, language)
    return _pick(CLARIFY_WITH_TOPICS, language).format(topics=", ".join(unique))


def build_context(passages: Sequence[Passage]) -> str:
    """Number passages in the order they are supplied to the model."""

    return "\n---\n\n".join(
        f"[Source {idx}: {passage.title}]\n{passage.content}\n"
        for idx, passage in enumerate(passages, start=1)
    )


def build_user_prompt(context: str, question: str) -> str:
    return (
        f"Context:\n{context}\n\nQuestion: {question}\n\n"
        "Please answer based ONLY on the provided context. If the answer is not "
        "in the context, say so."
    )


def format_citations(citations: Sequence[Citation]) -> str:
    """Render the trailing sources block; empty string when there are none."""

    if not citations:
        return ""
    lines = "\n".join(
        f"[{idx}] {c.title} - {c.url}" if c.url else f"[{idx}] {c.title}"
        for idx, c in enumerate(citations, start=1)
    )
    return f"\n\n**Sources:**\n{lines}"


__all__ = [
    "SYSTEM_PROMPT",
    "build_context",
    "build_user_prompt",
    "clarifying_question",
    "format_citations",
    "generation_apology",
    "handoff_reply",
]
