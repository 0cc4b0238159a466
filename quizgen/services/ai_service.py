"""
AI-backed oracles for question generation, improvement suggestions and hints.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

import httpx
from openai import OpenAI, OpenAIError

from quizgen.core.config import settings
from quizgen.core.errors import GenerationFailure, TransientDependencyFailure
from quizgen.models.orm import Question

logger = logging.getLogger(__name__)

FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
NUMBERING = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s*")

PERFECT_SCORE_SUGGESTIONS = [
    "Excellent work! You've mastered this topic.",
    "Try advancing to a higher difficulty level to challenge yourself further.",
]
DEFAULT_HINT = "Review the material and think carefully about each option."


class ChatClient:
    """Chat completions against any OpenAI-compatible endpoint (Groq by default)."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        if api_key is None and settings.AI_API_KEY is not None:
            api_key = settings.AI_API_KEY.get_secret_value()
        self.api_key = api_key
        self.base_url = base_url or settings.AI_BASE_URL
        self.model = model or settings.AI_MODEL
        self.timeout = timeout or settings.AI_TIMEOUT
        self.max_retries = settings.AI_MAX_RETRIES if max_retries is None else max_retries
        self.http_client = http_client
        self._client: Optional[OpenAI] = None

    def _get_client(self) -> OpenAI:
        if self._client is not None:
            return self._client
        if not self.api_key:
            raise TransientDependencyFailure("AI_API_KEY is not configured")
        self._client = OpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=self.max_retries,
            http_client=self.http_client,
        )
        return self._client

    def complete(self, system: str, prompt: str, *, temperature: float = settings.AI_TEMPERATURE, max_tokens: int = settings.AI_MAX_TOKENS) -> str:
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ]
        try:
            response = self._get_client().chat.completions.create(
                model=self.model, messages=messages, temperature=temperature, max_tokens=max_tokens
            )
        except OpenAIError as e:
            raise TransientDependencyFailure(f"AI request failed: {e}") from e
        try:
            return response.choices[0].message.content or ""
        except (AttributeError, IndexError, TypeError) as e:
            raise TransientDependencyFailure("Unexpected AI response shape") from e

    def close(self) -> None:
        if self._client is not None:
            self._client.close()


def extract_json(text: str) -> Any:
    """Parse a JSON document, tolerating a surrounding markdown code fence."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        match = FENCED_JSON.search(text)
        if not match:
            raise
        return json.loads(match.group(1))


class AIService:
    """Generation, suggestion and hint oracles backed by one chat model."""

    def __init__(self, client: Optional[ChatClient] = None):
        self.client = client or ChatClient()

    def generate_questions(self, subject: str, grade_level: str, count: int, difficulty: str) -> List[Dict[str, Any]]:
        """
        Ask the model for `count` multiple-choice question drafts.

        Returns the parsed list as-is; structural validation of each draft is
        left to the caller. Transport and parse problems raise GenerationFailure.
        """
        prompt = f"""Generate {count} multiple-choice quiz questions for {subject} at {grade_level} grade level with {difficulty} difficulty.

Format each question as JSON with this exact structure:
{{
  "question": "question text",
  "options": ["option A", "option B", "option C", "option D"],
  "correctAnswer": "the correct option text",
  "explanation": "brief explanation of the answer"
}}

Return ONLY a JSON array of questions, no additional text."""
        system = "You are an expert educator who creates high-quality quiz questions. Always respond with valid JSON only."
        try:
            content = self.client.complete(system, prompt)
        except TransientDependencyFailure as e:
            raise GenerationFailure(f"Failed to generate quiz questions: {e.message}") from e
        try:
            drafts = extract_json(content or "[]")
        except json.JSONDecodeError as e:
            raise GenerationFailure("Failed to parse AI response as JSON") from e
        if not isinstance(drafts, list):
            raise GenerationFailure("AI response is not an array")
        return drafts

    def generate_suggestions(
        self,
        subject: str,
        grade_level: str,
        incorrect_questions: Sequence[Question],
        score: float,
        fallback: Sequence[str],
    ) -> List[str]:
        """Exactly two improvement suggestions, or `fallback` when the model can't provide them."""
        if not incorrect_questions:
            return list(PERFECT_SCORE_SUGGESTIONS)

        topics = "\n- ".join(q.question_text for q in incorrect_questions)
        prompt = f"""A student scored {score:.0f}% on a {subject} quiz at {grade_level} grade level.

They struggled with these questions:
- {topics}

Provide exactly 2 specific, actionable improvement suggestions (each 1-2 sentences) to help them improve."""
        try:
            content = self.client.complete(
                "You are an experienced educator providing constructive feedback.", prompt, temperature=0.7, max_tokens=300
            )
        except TransientDependencyFailure as e:
            logger.warning(f"Suggestions generation failed, using fallback: {e.message}")
            return list(fallback)

        suggestions = parse_suggestions(content)
        if len(suggestions) < 2:
            logger.info("Model returned fewer than two usable suggestions, using fallback")
            return list(fallback)
        return suggestions

    def generate_hint(self, question_text: str, options: Sequence[str]) -> str:
        prompt = f"""For this quiz question, provide a helpful hint without revealing the answer:

Question: {question_text}
Options: {', '.join(options)}

Provide a brief, educational hint (1-2 sentences) that guides the student's thinking without giving away the answer."""
        try:
            content = self.client.complete(
                "You are a helpful tutor who provides educational hints.", prompt, temperature=0.6, max_tokens=200
            )
        except TransientDependencyFailure as e:
            logger.warning(f"Hint generation failed: {e.message}")
            return DEFAULT_HINT
        return content.strip() or "Think about the key concepts related to this topic."


def parse_suggestions(content: str) -> List[str]:
    lines = [line.strip() for line in (content or "").splitlines()]
    usable = [NUMBERING.sub("", line).strip() for line in lines if len(line) > 10]
    return usable[:2]
