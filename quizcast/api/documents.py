"""
Document API routes.

- POST /upload: size-checked, then metered (one credit), then parsed and stored
- POST /quiz, /ask, /generate-podcast: generate from a stored document (owner only)
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, File, UploadFile
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from quizcast.core.auth import get_current_user
from quizcast.core.config import settings
from quizcast.core.errors import ValidationError
from quizcast.core.identity import IdentityClaims
from quizcast.features.documents import service as document_service
from quizcast.features.documents.service import QuizQuestion
from quizcast.features.entitlements import service as entitlement_service

router = APIRouter(tags=["documents"])


class UploadResponse(BaseModel):
    document_id: str
    message: str
    credits_remaining: Optional[int]
    unlimited: bool


class DocumentRequest(BaseModel):
    document_id: str = Field(..., min_length=1)


class AskRequest(DocumentRequest):
    question: str = Field(..., min_length=1)


class QuizResponse(BaseModel):
    quiz: List[QuizQuestion]


class AskResponse(BaseModel):
    answer: str


class PodcastResponse(BaseModel):
    script: str


@router.post("/upload", response_model=UploadResponse)
async def upload_document(
    pdf: UploadFile = File(...),
    identity: IdentityClaims = Depends(get_current_user),
):
    """
    Upload a PDF.

    Errors:
        401: Missing/invalid token (no credit check attempted)
        400: File over MAX_UPLOAD_BYTES (rejected before metering)
        402: Daily credits exhausted
        503: Entitlement store unavailable
        400: Unreadable PDF (the credit stays spent)
    """
    content = await pdf.read(settings.MAX_UPLOAD_BYTES + 1)
    if len(content) > settings.MAX_UPLOAD_BYTES:
        raise ValidationError("Uploaded file is too large", code="file_too_large")

    decision = await run_in_threadpool(entitlement_service.require_entitlement, identity.user_id)

    text = await run_in_threadpool(document_service.extract_pdf_text, content)
    document = await run_in_threadpool(document_service.save_document, identity.user_id, text, pdf.filename)

    return UploadResponse(
        document_id=document.document_id,
        message="PDF uploaded and parsed successfully.",
        credits_remaining=decision.credits_remaining,
        unlimited=decision.unlimited,
    )


@router.post("/quiz", response_model=QuizResponse)
def generate_quiz(body: DocumentRequest, identity: IdentityClaims = Depends(get_current_user)):
    document = document_service.get_document(identity.user_id, body.document_id)
    return QuizResponse(quiz=document_service.get_generator().quiz(document.context()))


@router.post("/ask", response_model=AskResponse)
def ask_question(body: AskRequest, identity: IdentityClaims = Depends(get_current_user)):
    document = document_service.get_document(identity.user_id, body.document_id)
    return AskResponse(answer=document_service.get_generator().answer(document.context(), body.question))


@router.post("/generate-podcast", response_model=PodcastResponse)
def generate_podcast(body: DocumentRequest, identity: IdentityClaims = Depends(get_current_user)):
    document = document_service.get_document(identity.user_id, body.document_id)
    return PodcastResponse(script=document_service.get_generator().podcast_script(document.context()))
