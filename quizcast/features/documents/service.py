"""
quizcast/features/documents/service.py

Uploaded documents and the artifacts generated from them.

Handles:
- PDF text extraction (pypdf)
- Per-user document storage keyed by an explicit document_id
- Quiz / answer / podcast-script generation through Groq

Generation runs after the entitlement check; a failure here does not refund the
credit that was spent on the upload.
"""

import io
import json
import logging
import re
from typing import List, Optional
from uuid import uuid4

import groq
from pydantic import BaseModel, ValidationError as PydanticValidationError, model_validator
from pypdf import PdfReader
from pypdf.errors import PyPdfError
from sqlalchemy import insert, select
from sqlalchemy.exc import SQLAlchemyError

from quizcast.core.config import settings
from quizcast.core.database import documents, get_db_session
from quizcast.core.errors import GenerationError, NotFoundError, StoreUnavailableError, ValidationError
from quizcast.features.documents.prompts import (
    ASK_SYSTEM_PROMPT,
    PODCAST_SYSTEM_PROMPT,
    QUIZ_SYSTEM_PROMPT,
    ask_user_prompt,
)

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


class QuizQuestion(BaseModel):
    question: str
    choices: List[str]
    answer: str

    @model_validator(mode="after")
    def _answer_is_a_choice(self) -> "QuizQuestion":
        if self.answer not in self.choices:
            raise ValueError("answer must be one of the choices")
        return self


class StoredDocument(BaseModel):
    document_id: str
    user_id: str
    filename: Optional[str] = None
    text: str

    def context(self) -> str:
        """Leading slice of the text that is sent to the model."""
        return self.text[: settings.DOCUMENT_CONTEXT_CHARS]


def extract_pdf_text(content: bytes) -> str:
    """
    Extract text from every page of a PDF.

    Raises:
        ValidationError: Unreadable PDF or no extractable text
    """
    if not content:
        raise ValidationError("Uploaded file is empty")
    try:
        reader = PdfReader(io.BytesIO(content))
        text = "\n".join((page.extract_text() or "") for page in reader.pages).strip()
    except (PyPdfError, ValueError) as e:
        logger.warning("[documents] pdf extraction failed: %s", e)
        raise ValidationError(f"Failed to parse PDF: {e}", code="invalid_pdf")
    if not text:
        raise ValidationError("PDF contains no extractable text", code="invalid_pdf")
    return text


def save_document(user_id: str, text: str, filename: Optional[str] = None) -> StoredDocument:
    document_id = uuid4().hex
    try:
        with get_db_session() as session:
            session.execute(
                insert(documents).values(
                    document_id=document_id,
                    user_id=user_id,
                    filename=filename,
                    text=text,
                )
            )
    except SQLAlchemyError as e:
        raise StoreUnavailableError(f"Document store write failed: {e.__class__.__name__}") from e
    logger.info("[documents] stored", extra={"user_id": user_id, "event_type": "document.stored"})
    return StoredDocument(document_id=document_id, user_id=user_id, filename=filename, text=text)


def get_document(user_id: str, document_id: str) -> StoredDocument:
    """
    Load a document owned by ``user_id``.

    Raises:
        NotFoundError: Unknown id, or the document belongs to someone else
    """
    try:
        with get_db_session() as session:
            row = session.execute(
                select(documents).where(documents.c.document_id == document_id)
            ).first()
    except SQLAlchemyError as e:
        raise StoreUnavailableError(f"Document store read failed: {e.__class__.__name__}") from e

    if row is None or row.user_id != user_id:
        raise NotFoundError("Document not found", code="document_not_found", details={"document_id": document_id})
    return StoredDocument(document_id=row.document_id, user_id=row.user_id, filename=row.filename, text=row.text)


def parse_quiz(raw: str) -> List[QuizQuestion]:
    """Parse the model's JSON array, tolerating a surrounding code fence."""
    try:
        items = json.loads(_FENCE_RE.sub("", raw.strip()))
    except ValueError as e:
        raise GenerationError("Model returned invalid quiz JSON") from e
    if not isinstance(items, list) or not items:
        raise GenerationError("Model returned no quiz questions")
    try:
        return [QuizQuestion.model_validate(item) for item in items]
    except PydanticValidationError as e:
        raise GenerationError("Model returned malformed quiz questions", details={"errors": e.error_count()}) from e


class GroqGenerator:
    """Chat-completion calls for the three document artifacts."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        key = api_key or settings.GROQ_API_KEY
        if not key:
            raise GenerationError("GROQ_API_KEY not configured", code="generation_unconfigured", status_code=503)
        self.client = groq.Groq(api_key=key)
        self.model = model or settings.GROQ_MODEL

    def _complete(self, system: str, user: str, temperature: float = 0.7) -> str:
        try:
            completion = self.client.chat.completions.create(
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                model=self.model,
                temperature=temperature,
                max_tokens=2048,
            )
        except groq.APIError as e:
            logger.error("[documents] groq call failed: %s", e)
            raise GenerationError("Generation provider request failed") from e
        content = completion.choices[0].message.content
        if not content:
            raise GenerationError("Generation provider returned an empty response")
        return content

    def quiz(self, context: str) -> List[QuizQuestion]:
        return parse_quiz(self._complete(QUIZ_SYSTEM_PROMPT, context, temperature=0.9))

    def answer(self, context: str, question: str) -> str:
        return self._complete(ASK_SYSTEM_PROMPT, ask_user_prompt(context, question), temperature=0.2)

    def podcast_script(self, context: str) -> str:
        return self._complete(PODCAST_SYSTEM_PROMPT, context)


def get_generator() -> GroqGenerator:
    return GroqGenerator()
