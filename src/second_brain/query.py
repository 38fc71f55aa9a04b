from __future__ import annotations

import os
from dataclasses import dataclass
from textwrap import shorten
from typing import Any, Callable, List, Optional, Sequence, Tuple

import numpy as np
from dotenv import load_dotenv
from openai import OpenAI
from rich.panel import Panel

from .config import AppConfig, load_config
from .context import PromptContext, build_context
from .db import Database
from .embeddings import EmbeddingStore
from .errors import InvalidConfiguration
from .log import console, get_logger
from .models import RetrievedChunk
from .search import Retriever

logger = get_logger(__name__)

QueryEncoder = Callable[[str], Sequence[float]]

SYSTEM_PROMPT = "You are a careful assistant for question answering over notes."


def build_prompt(question: str, context: PromptContext) -> str:
    header = (
        "You are a helpful assistant answering questions based only on the provided context.\n"
        "Cite sources with their bracketed numbers, e.g. [1].\n"
        "If the answer is not clearly present, say you are not sure rather than guessing.\n\n"
    )
    return f"{header}Context:\n{context.render()}\n\nUser question: {question}\nAnswer:"


@dataclass
class Answer:
    question: str
    text: str
    context: PromptContext
    results: List[RetrievedChunk]


def retrieve_context(
    question: str,
    cfg: AppConfig,
    db: Database,
    encode_query: Optional[QueryEncoder] = None,
) -> Tuple[List[RetrievedChunk], PromptContext]:
    """Run hybrid search for ``question`` and pack the hits into a context."""
    embeddings = EmbeddingStore(db, cfg.embedding_model_name)
    retriever = Retriever(db, embeddings, candidate_multiplier=cfg.candidate_multiplier)

    query_vector = None
    if encode_query is not None and embeddings.dimension() is not None:
        query_vector = np.asarray(encode_query(question), dtype=np.float32)

    results = retriever.search(question, query_vector, k=cfg.top_k, vector_weight=cfg.vector_weight)
    context = build_context(results, budget=cfg.max_context_chars)
    return results, context


def answer_question(
    question: str,
    cfg: Optional[AppConfig] = None,
    db: Optional[Database] = None,
    encode_query: Optional[QueryEncoder] = None,
    client: Any = None,
) -> Optional[Answer]:
    """
    Answer ``question`` from the indexed corpus with an OpenAI chat model.

    ``encode_query`` turns the question into a vector (lexical-only search
    when omitted) and ``client`` defaults to ``OpenAI()``; both can be
    swapped for fakes.
    """
    # Ensure .env is loaded even if config loading is bypassed elsewhere.
    load_dotenv()

    if cfg is None:
        cfg = load_config()

    if client is None:
        if not os.getenv("OPENAI_API_KEY"):
            raise InvalidConfiguration(
                "OPENAI_API_KEY is not set. Put it in a .env file or environment variable.",
                field="OPENAI_API_KEY",
            )
        client = OpenAI()

    owns_db = db is None
    if db is None:
        db = Database.open(cfg.database_path)
    try:
        results, context = retrieve_context(question, cfg, db, encode_query)
    finally:
        if owns_db:
            db.close()

    if not context.entries:
        logger.warning("No results found. Did you ingest and embed any content?")
        return None

    prompt = build_prompt(question, context)

    logger.info("Calling OpenAI (%s), %s", cfg.openai_model, context.summary())
    response = client.chat.completions.create(
        model=cfg.openai_model,
        messages=[
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        temperature=0.2,
    )

    text = response.choices[0].message.content or ""
    return Answer(question=question, text=text.strip(), context=context, results=results)


def print_answer(answer: Answer) -> None:
    console.rule("[bold green]Answer[/bold green]")
    console.print(answer.text)

    console.rule(f"[bold blue]Sources ({answer.context.summary()})[/bold blue]")
    for entry in answer.context.entries:
        preview = shorten(entry.chunk.content.replace("\n", " "), width=180, placeholder="...")
        console.print(
            Panel(
                preview,
                title=f"{entry.marker} {entry.item_title}",
                subtitle=f"score={entry.chunk.score:.3f}",
                expand=False,
            )
        )


__all__ = ["Answer", "answer_question", "build_prompt", "print_answer", "retrieve_context"]
