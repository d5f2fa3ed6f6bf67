from typing import Iterator

import pytest

from review_funnel import llm
from review_funnel.config import get_settings
from review_funnel.funnel import funnel_registry
from review_funnel.memory import session_storage


@pytest.fixture(autouse=True)
def isolated_state(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Fresh settings, stores and AI client for every test; no real submission delay."""

    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("REVIEW_FUNNEL_SUBMIT_DELAY_SECONDS", "0")
    get_settings.cache_clear()
    funnel_registry.clear()
    session_storage.clear()
    monkeypatch.setattr(llm, "_client_cache", None)
    yield
    get_settings.cache_clear()
