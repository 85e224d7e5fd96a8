"""
Document service: PDF extraction, storage ownership and quiz parsing.
"""
import io

import pytest
from pypdf import PdfWriter

from quizcast.core.errors import GenerationError, NotFoundError, ValidationError
from quizcast.features.documents.service import (
    GroqGenerator,
    extract_pdf_text,
    get_document,
    parse_quiz,
    save_document,
)
from quizcast.tests.mocks import FakeGroq


def _blank_pdf() -> bytes:
    writer = PdfWriter()
    writer.add_blank_page(width=200, height=200)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def test_extract_rejects_empty_upload():
    with pytest.raises(ValidationError):
        extract_pdf_text(b"")


def test_extract_rejects_garbage():
    with pytest.raises(ValidationError) as exc_info:
        extract_pdf_text(b"not a pdf at all")
    assert exc_info.value.code == "invalid_pdf"


def test_extract_rejects_pdf_without_text():
    with pytest.raises(ValidationError) as exc_info:
        extract_pdf_text(_blank_pdf())
    assert exc_info.value.code == "invalid_pdf"


def test_documents_are_owner_scoped():
    stored = save_document("alice", "cell biology", filename="bio.pdf")

    assert get_document("alice", stored.document_id).text == "cell biology"
    with pytest.raises(NotFoundError):
        get_document("bob", stored.document_id)
    with pytest.raises(NotFoundError):
        get_document("alice", "missing")


def test_context_is_truncated(default_settings, monkeypatch):
    monkeypatch.setattr(default_settings, "DOCUMENT_CONTEXT_CHARS", 5)
    stored = save_document("alice", "abcdefghij")
    assert stored.context() == "abcde"


def test_parse_quiz_accepts_fenced_json():
    raw = '```json\n[{"question": "Q", "choices": ["A", "B"], "answer": "B"}]\n```'
    quiz = parse_quiz(raw)
    assert quiz[0].answer == "B"


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[]",
        '{"question": "Q"}',
        '[{"question": "Q", "choices": ["A", "B"], "answer": "C"}]',
    ],
)
def test_parse_quiz_rejects_bad_output(raw):
    with pytest.raises(GenerationError):
        parse_quiz(raw)


def test_generator_requires_api_key(default_settings, monkeypatch):
    monkeypatch.setattr(default_settings, "GROQ_API_KEY", None)
    with pytest.raises(GenerationError) as exc_info:
        GroqGenerator()
    assert exc_info.value.status_code == 503


def test_generator_sends_question_with_context():
    generator = GroqGenerator(api_key="gsk_test", model="test-model")
    generator.client = FakeGroq("It is green.")

    assert generator.answer("Leaves are green.", "What colour?") == "It is green."

    call = generator.client.chat.completions.calls[0]
    assert call["model"] == "test-model"
    assert "Leaves are green." in call["messages"][1]["content"]
    assert "What colour?" in call["messages"][1]["content"]


def test_generator_empty_response():
    generator = GroqGenerator(api_key="gsk_test")
    generator.client = FakeGroq("")
    with pytest.raises(GenerationError):
        generator.podcast_script("text")
