from __future__ import annotations

import sys
from concurrent.futures import Executor, Future
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from wellness_agent.business_hours import BusinessHoursStatus  # noqa: E402
from wellness_agent.catalog import load_catalog  # noqa: E402
from wellness_agent.config import RESOURCES_DIR, load_settings  # noqa: E402
from wellness_agent.errors import EscalationDeliveryError  # noqa: E402
from wellness_agent.escalation import EscalationRouter, NotificationResult  # noqa: E402
from wellness_agent.escalation_queue import EscalationQueue  # noqa: E402
from wellness_agent.gemini_client import GenerationResult  # noqa: E402
from wellness_agent.lexicon import load_lexicon  # noqa: E402
from wellness_agent.pipeline import ConversationPipeline  # noqa: E402
from wellness_agent.prompt_loader import SYSTEM_PROMPT_FILE, load_prompt  # noqa: E402
from wellness_agent.relevance_scorer import RelevanceScorer  # noqa: E402
from wellness_agent.response_validator import ResponseValidator  # noqa: E402
from wellness_agent.session_store import ConversationStore  # noqa: E402
from wellness_agent.term_extractor import TermExtractor  # noqa: E402

ADMIN_PHONE = "081277721866"


class FakeGenerator:
    """Returns scripted replies in order, or raises the scripted error."""

    def __init__(self, replies: Sequence[str] = (), error: Optional[Exception] = None) -> None:
        self.replies = list(replies)
        self.error = error
        self.calls: List[Dict[str, object]] = []

    def generate(self, system_prompt: str, history: Sequence[Dict[str, str]]) -> GenerationResult:
        self.calls.append({"system_prompt": system_prompt, "history": list(history)})
        if self.error is not None:
            raise self.error
        return GenerationResult(text=self.replies.pop(0), token_usage=17)


class FakeChannel:
    def __init__(self, success: bool = True, raise_error: bool = False) -> None:
        self.success = success
        self.raise_error = raise_error
        self.notified = []

    def notify(self, record) -> NotificationResult:
        self.notified.append(record)
        if self.raise_error:
            raise EscalationDeliveryError("channel down")
        return NotificationResult(success=self.success, detail="ok" if self.success else "rejected")


class FixedOracle:
    def __init__(self, is_open: bool, next_open_time: Optional[str] = "besok pukul 09:00 WIB") -> None:
        self.is_open = is_open
        self.next_open_time = next_open_time

    def is_business_hours(self, now=None) -> BusinessHoursStatus:
        return BusinessHoursStatus(
            is_open=self.is_open,
            next_open_time=None if self.is_open else self.next_open_time,
            current_time="10:00 WIB" if self.is_open else "20:00 WIB",
        )


class InlineExecutor(Executor):
    """Runs submitted work immediately so delivery is observable in tests."""

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


@pytest.fixture(scope="session")
def lexicon():
    return load_lexicon(RESOURCES_DIR / "health_lexicon.json")


@pytest.fixture(scope="session")
def catalog():
    return load_catalog(RESOURCES_DIR / "products.json")


@pytest.fixture
def extractor(lexicon):
    return TermExtractor(lexicon)


@pytest.fixture
def scorer(lexicon):
    return RelevanceScorer(lexicon)


@pytest.fixture
def validator(catalog):
    return ResponseValidator(catalog)


@pytest.fixture
def settings(tmp_path):
    return replace(load_settings(), gemini_api_key="test-key", data_dir=tmp_path / "data", admin_phone=ADMIN_PHONE)


@pytest.fixture
def make_pipeline(tmp_path, lexicon, catalog, settings):
    """Factory: pipeline wired with fakes; returns (pipeline, store, queue)."""

    def _make(generator: FakeGenerator, oracle=None, channel=None):
        queue = EscalationQueue(tmp_path / "escalations.json")
        store = ConversationStore(tmp_path / "conversations.json", ttl_sec=3600, history_limit=20)
        router = EscalationRouter(
            oracle or FixedOracle(is_open=False),
            queue,
            channel or FakeChannel(),
            ADMIN_PHONE,
            executor=InlineExecutor(),
        )
        pipeline = ConversationPipeline(
            catalog=catalog,
            extractor=TermExtractor(lexicon),
            scorer=RelevanceScorer(lexicon),
            validator=ResponseValidator(catalog),
            router=router,
            store=store,
            generator=generator,
            prompt_template=load_prompt(settings.prompts_dir / SYSTEM_PROMPT_FILE),
            admin_phone=ADMIN_PHONE,
        )
        return pipeline, store, queue

    return _make
