"""Codebase assistant: questions and quizzes over a finished analysis.

Conversational queries are metered per user through the result store's
usage counter. The free plan is capped; paid plans are not. The quota is
checked before any backend call, and a query only counts once the backend
has actually produced an answer. Each answered exchange is written back
to the stored analysis as its chat history.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from .errors import QuotaExceeded, StoreError
from .llm import prompts
from .llm.gateway import GenerationGateway
from .models import CompositeAnalysis
from .store import ResultStore

logger = logging.getLogger("codeatlas.assistant")

FREE_MESSAGE_LIMIT = 5
UNLIMITED_PLANS = frozenset({"premium", "unlimited"})


class ChatReply(BaseModel):
    answer: str
    questions_used: int
    questions_remaining: Optional[int] = None  # None: plan is not metered


class QuizQuestion(BaseModel):
    """One multiple-choice question; ``correct_answer`` indexes ``options``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    question: str
    options: list[str] = Field(min_length=2)
    correct_answer: int
    explanation: str = ""

    @model_validator(mode="after")
    def _answer_in_range(self) -> QuizQuestion:
        if not 0 <= self.correct_answer < len(self.options):
            raise ValueError(
                f"correct_answer {self.correct_answer} outside options 0..{len(self.options) - 1}"
            )
        return self


class CodebaseAssistant:
    """Answer questions about, and quiz users on, a ``CompositeAnalysis``.

    Parameters
    ----------
    gateway
        Generation gateway used for both chat and quiz prompts.
    store
        Result store whose usage counters meter chat questions.
    free_message_limit
        Questions a free-plan user may ask in total.
    """

    def __init__(
        self,
        gateway: GenerationGateway,
        store: ResultStore,
        *,
        free_message_limit: int = FREE_MESSAGE_LIMIT,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.free_message_limit = free_message_limit
        self._user_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def limit_for(self, plan: str) -> int | None:
        plan = (plan or "free").lower()
        if plan in UNLIMITED_PLANS:
            return None
        if plan == "free":
            return self.free_message_limit
        raise ValueError(f"Unknown plan '{plan}'")

    async def ask(
        self,
        user_id: str,
        analysis: CompositeAnalysis,
        question: str,
        *,
        history: Sequence[Mapping[str, str]] = (),
        plan: str = "free",
    ) -> ChatReply:
        """Answer *question* using *analysis* as context.

        Raises QuotaExceeded (before contacting the backend) once a free
        user has used up their questions. GatewayExhausted propagates and
        does not count against the quota.
        """
        if not question or not question.strip():
            raise ValueError("question must not be empty")
        question = question.strip()
        limit = self.limit_for(plan)
        turns = [dict(h) for h in history]

        # check, generate and count as one step per user
        async with self._user_locks[user_id]:
            if limit is not None:
                used = self.store.get_usage_counter(user_id)
                if used >= limit:
                    raise QuotaExceeded(user_id, used, limit)

            prompt = prompts.chat_prompt(question, analysis.to_document(), turns)
            answer = (await self.gateway.generate(prompt)).strip()
            used = self.store.increment_usage_counter(user_id)

        logger.info("Answered question %d for %s on %s", used, user_id, analysis.repository_url)
        self._save_history(user_id, analysis.repository_url, [
            *turns,
            {"role": "user", "content": question},
            {"role": "assistant", "content": answer},
        ])
        return ChatReply(
            answer=answer,
            questions_used=used,
            questions_remaining=None if limit is None else max(0, limit - used),
        )

    def _save_history(self, user_id: str, repository_url: str, messages: list[dict[str, str]]) -> None:
        try:
            saved = self.store.save_chat_history(repository_url, user_id, messages)
        except StoreError as exc:
            logger.warning("Chat history for %s not persisted: %s", repository_url, exc)
            return
        if not saved:
            logger.debug("No stored analysis of %s for %s; chat history kept in memory only",
                         repository_url, user_id)

    async def quiz(
        self,
        analysis: CompositeAnalysis,
        *,
        role: str = "full-stack",
        count: int = 5,
    ) -> list[QuizQuestion]:
        """Generate *count* questions; malformed output yields built-in ones."""
        fallback = {"questions": []}
        data = await self.gateway.generate_json(
            prompts.quiz_prompt(role, analysis.to_document(), count), fallback
        )
        raw = data.get("questions") if isinstance(data, dict) else data
        questions: list[QuizQuestion] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                questions.append(QuizQuestion.model_validate(item))
            except ValidationError as exc:
                logger.debug("Dropping malformed quiz question: %s", exc)
        if not questions:
            logger.warning("Quiz generation returned no usable questions; using defaults")
            questions = default_quiz(analysis)
        return questions[:count]


# ---------------------------------------------------------------------------
# Deterministic fallback quiz
# ---------------------------------------------------------------------------

def default_quiz(analysis: CompositeAnalysis) -> list[QuizQuestion]:
    """Questions answerable from the analysis itself."""
    questions: list[QuizQuestion] = []
    repo_name = analysis.repository.name if analysis.repository else analysis.repository_url

    # sections are model output: only plain strings become options
    pattern = _get(analysis.structure, "architecture", "pattern")
    if isinstance(pattern, str) and pattern.strip():
        description = _get(analysis.structure, "architecture", "description")
        questions.append(QuizQuestion(
            question=f"Which architectural pattern best describes {repo_name}?",
            options=[pattern, "Single-file script", "Plugin microkernel", "Event sourcing"],
            correct_answer=0,
            explanation=description if isinstance(description, str) else "",
        ))

    ranked = (analysis.critical_paths or {}).get("frequentlyChangedFiles")
    names = [
        f["filename"]
        for f in (ranked if isinstance(ranked, list) else [])
        if isinstance(f, dict) and isinstance(f.get("filename"), str) and f["filename"]
    ]
    if len(names) >= 2:
        questions.append(QuizQuestion(
            question="Which file changed most often in recent history?",
            options=names[:4],
            correct_answer=0,
            explanation="Frequently changed files usually hold the core business logic.",
        ))

    language = analysis.repository.language if analysis.repository else ""
    if language:
        distractors = [lang for lang in ("Python", "TypeScript", "Go", "Java") if lang != language]
        questions.append(QuizQuestion(
            question=f"What is the primary language of {repo_name}?",
            options=[language, *distractors[:3]],
            correct_answer=0,
            explanation=f"The host reports {language} as the main language.",
        ))

    questions.append(QuizQuestion(
        question="Where should you start reading an unfamiliar codebase?",
        options=[
            "Its entry points and critical paths",
            "The largest file in the repository",
            "The oldest commit",
            "The lockfile",
        ],
        correct_answer=0,
        explanation="Entry points show how requests and data flow through the system.",
    ))
    return questions


def _get(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data
