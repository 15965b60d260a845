"""Tests for the loopback driver script."""

from __future__ import annotations

import importlib.util
import os
from pathlib import Path

import pytest

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "loopback.py"


@pytest.fixture
def loopback(monkeypatch):
    for key in list(os.environ):
        if key.startswith("PARLEY_"):
            monkeypatch.delenv(key)
    spec = importlib.util.spec_from_file_location("parley_loopback", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestLoopback:
    @pytest.mark.asyncio
    async def test_echoes_each_message(self, loopback, capsys):
        args = loopback._parse_args(["--echo", "--delay", "0", "hello there", "bye"])

        assert await loopback.run(args) == 0

        out = capsys.readouterr().out.splitlines()
        assert out[0].startswith("[assistant] Hello!")
        assert out[1:] == ["[you] hello there", "[assistant] hello there", "[you] bye", "[assistant] bye"]

    @pytest.mark.asyncio
    async def test_history_survives_between_runs(self, loopback, capsys, tmp_path):
        db = tmp_path / "chat.db"
        await loopback.run(loopback._parse_args(["--echo", "--delay", "0", "--skip-welcome", "--db", str(db), "first"]))
        capsys.readouterr()

        await loopback.run(loopback._parse_args(["--echo", "--delay", "0", "--skip-welcome", "--db", str(db), "second"]))

        out = capsys.readouterr().out.splitlines()
        assert out == ["[you] second", "[assistant] second"]
        assert db.exists()

    def test_defaults(self, loopback):
        args = loopback._parse_args([])

        assert args.messages == []
        assert not args.echo and not args.skip_welcome
        assert args.db is None
