import json
from unittest.mock import Mock

import pytest
import requests

from app.services import question_generator
from app.services.errors import FatalError, TransientError
from app.services.question_generator import (
    LLMServiceError,
    QuestionGenerator,
    StubQuestionGenerator,
    parse_questions,
)

VALID = [
    {"question": "2+2?", "options": ["3", "4", "5", "6"], "correct_answer": 1, "explanation": "Addition.", "category": "Math"},
    {"question": "Capital of France?", "options": ["Paris", "Lyon"], "correct_answer": "0"},
]


def _response(status=200, body=None):
    resp = Mock()
    resp.status_code = status
    resp.json.return_value = body if body is not None else {}
    return resp


def _completion(content: str):
    return _response(200, {"choices": [{"message": {"content": content}}]})


def test_parse_strips_code_fences_and_defaults_category():
    content = "```json\n" + json.dumps(VALID) + "\n```"

    drafts = parse_questions(content, "Trivia")

    assert [d.question_text for d in drafts] == ["2+2?", "Capital of France?"]
    assert drafts[1].correct_answer == 0
    assert drafts[1].category == "Trivia"
    assert [d.order_index for d in drafts] == [0, 1]


def test_parse_drops_invalid_drafts_and_reindexes():
    items = [
        {"question": "bad index", "options": ["a", "b"], "correct_answer": 5},
        {"question": "one option", "options": ["a"], "correct_answer": 0},
        {"question": "not int", "options": ["a", "b"], "correct_answer": 0.5},
        VALID[0],
    ]

    drafts = parse_questions(json.dumps(items), "Math")

    assert len(drafts) == 1
    assert drafts[0].question_text == "2+2?"
    assert drafts[0].order_index == 0


@pytest.mark.parametrize("content", ["not json", '{"question": "x"}'])
def test_parse_rejects_unusable_content(content):
    with pytest.raises(LLMServiceError):
        parse_questions(content, "Math")


def test_llm_error_is_transient():
    assert issubclass(LLMServiceError, TransientError)


def test_generate_falls_back_to_next_model():
    session = Mock()
    session.post.side_effect = [
        _response(404, {"error": {"message": "model not found"}}),
        requests.Timeout(),
        _completion(json.dumps(VALID)),
    ]
    gen = QuestionGenerator("http://llm.local/v1/chat/completions", api_key="k", models=["m1", "m2", "m3"], session=session)

    drafts = gen.generate("Math", 2, "easy")

    assert len(drafts) == 2
    assert [c.kwargs["json"]["model"] for c in session.post.call_args_list] == ["m1", "m2", "m3"]
    assert session.post.call_args.kwargs["headers"]["Authorization"] == "Bearer k"


def test_generate_raises_on_hard_api_error():
    session = Mock()
    session.post.return_value = _response(401, {"error": {"message": "Invalid API Key"}})
    gen = QuestionGenerator("http://llm.local", api_key="k", models=["m1", "m2"], session=session)

    with pytest.raises(LLMServiceError, match="Invalid API Key"):
        gen.generate("Math", 2)
    assert session.post.call_count == 1


def test_generate_raises_when_all_models_unavailable():
    session = Mock()
    session.post.side_effect = requests.ConnectionError()
    gen = QuestionGenerator("http://llm.local", api_key="k", models=["m1", "m2"], session=session)

    with pytest.raises(LLMServiceError):
        gen.generate("Math", 2)
    assert session.post.call_count == 2


def test_generate_requires_api_key():
    gen = QuestionGenerator("http://llm.local", api_key="", models=["m1"], session=Mock())
    with pytest.raises(FatalError):
        gen.generate("Math", 2)


def test_stub_generator_is_deterministic(monkeypatch):
    monkeypatch.setattr(question_generator.settings, "LLM_PROVIDER", "stub")
    gen = question_generator.get_generator()

    assert isinstance(gen, StubQuestionGenerator)
    drafts = gen.generate("Space", 5, "hard")
    assert [d.order_index for d in drafts] == list(range(5))
    assert drafts == gen.generate("Space", 5, "hard")
