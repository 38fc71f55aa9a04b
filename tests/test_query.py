"""Tests for prompt building and the ask flow, with a fake chat client."""

from types import SimpleNamespace
from typing import Any, Dict, List

import pytest

from second_brain.config import AppConfig
from second_brain.context import build_context
from second_brain.db import Database
from second_brain.errors import InvalidConfiguration
from second_brain.models import RetrievedChunk
from second_brain.query import answer_question, build_prompt


class FakeCompletions:
    def __init__(self, reply: str) -> None:
        self.reply = reply
        self.requests: List[Dict[str, Any]] = []

    def create(self, **kwargs: Any) -> SimpleNamespace:
        self.requests.append(kwargs)
        message = SimpleNamespace(content=self.reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeClient:
    def __init__(self, reply: str = "answer") -> None:
        self.completions = FakeCompletions(reply)
        self.chat = SimpleNamespace(completions=self.completions)


@pytest.fixture
def cfg() -> AppConfig:
    return AppConfig(top_k=3, vector_weight=0.5)


class TestBuildPrompt:
    def test_prompt_should_embed_context_and_question(self) -> None:
        context = build_context(
            [RetrievedChunk("c1", "i1", "Bread", 0, "Rest the dough overnight.")],
            budget=1000,
        )

        prompt = build_prompt("How long does dough rest?", context)

        assert "[1] From: Bread\nRest the dough overnight." in prompt
        assert prompt.rstrip().endswith("User question: How long does dough rest?\nAnswer:")


class TestAnswerQuestion:
    def test_should_send_retrieved_context_to_the_model(
        self, db: Database, cfg: AppConfig, make_item
    ) -> None:
        make_item("Bread", ["Rest the dough overnight before baking."])
        make_item("Taxes", ["File the return before April."])
        client = FakeClient(reply="  Overnight [1].  ")

        answer = answer_question("dough rest", cfg, db=db, client=client)

        assert answer is not None
        assert answer.text == "Overnight [1]."
        assert answer.context.citations() == {1: "Bread"}
        request = client.completions.requests[0]
        assert request["model"] == cfg.openai_model
        assert "Rest the dough overnight" in request["messages"][1]["content"]

    def test_query_encoder_should_enable_vector_search(
        self, db: Database, cfg: AppConfig, make_item, embeddings, items
    ) -> None:
        item = make_item("Bread", ["Rest the dough overnight."])
        embeddings.put(items.chunks_for(item.id)[0].id, [1.0, 0.0])
        client = FakeClient()

        answer = answer_question(
            "unrelated words", cfg, db=db, encode_query=lambda q: [1.0, 0.0], client=client
        )

        assert answer is not None
        assert answer.results[0].item_title == "Bread"

    def test_no_results_should_skip_the_model(self, db: Database, cfg: AppConfig) -> None:
        client = FakeClient()

        assert answer_question("anything", cfg, db=db, client=client) is None
        assert client.completions.requests == []

    def test_missing_api_key_should_raise(
        self, db: Database, cfg: AppConfig, monkeypatch
    ) -> None:
        monkeypatch.setattr("second_brain.query.load_dotenv", lambda: None)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        with pytest.raises(InvalidConfiguration):
            answer_question("anything", cfg, db=db)
