"""Tests for application wiring."""

from __future__ import annotations

import pytest

from localchat.config import ChatConfig, StorageConfig
from localchat.core.engine import ChatEngine
from localchat.core.memory.store import SQLiteSessionStore
from localchat.main import build_engine, ensure_localchat_home, setup_logging


class TestBuildEngine:
    """Components are constructed from config and passed down."""

    @pytest.mark.asyncio
    async def test_wiring(self, tmp_path):
        config = ChatConfig(storage=StorageConfig(db_path=str(tmp_path / "chat.db")))
        engine = build_engine(config)
        try:
            assert isinstance(engine, ChatEngine)
            assert isinstance(engine.sessions.store, SQLiteSessionStore)
            assert engine.sessions.default_model == config.ollama.default_model
            assert engine.sessions.config is config.context
            assert engine.client.config is config.ollama

            await engine.sessions.initialize()
            session = await engine.create_session()
            assert engine.sessions.current_session is session
        finally:
            await engine.client.aclose()

    def test_ensure_home(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LOCALCHAT_HOME", str(tmp_path / "lc"))
        home = ensure_localchat_home()
        assert (home / "history").is_dir()

    def test_setup_logging_accepts_unknown_level(self):
        setup_logging("not-a-level")
        setup_logging("DEBUG")
