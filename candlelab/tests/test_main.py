"""
Tests for main.py — argument parsing and the backtest / demo commands.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from unittest.mock import patch

import pytest

from main import build_parser, main


class TestParser:
    def test_backtest_defaults(self):
        args = build_parser().parse_args(["backtest"])
        assert args.strategy == "ma_crossover"
        assert args.candles == 500
        assert args.seed == 42

    def test_serve_options(self):
        args = build_parser().parse_args(["serve", "--port", "9000"])
        assert args.port == 9000
        assert args.host is None

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_unknown_strategy(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["backtest", "--strategy", "magic"])


class TestCommands:
    def test_backtest(self, capsys):
        with patch("main.setup_logging"):
            assert main(["backtest", "--strategy", "rsi", "--candles", "200"]) == 0
        out = capsys.readouterr().out
        assert "strategy=rsi" in out
        assert "Total trades" in out

    def test_demo(self, capsys):
        with patch("main.setup_logging"):
            assert main(["demo", "--candles", "80"]) == 0
        out = capsys.readouterr().out
        assert "EURUSD 5m | 80 candles" in out
        assert "ensemble" in out
        assert "rule_based" in out

    def test_serve_uses_settings(self):
        with patch("main.setup_logging"), patch("uvicorn.run") as run:
            assert main(["serve", "--port", "9100"]) == 0
        assert run.call_args.kwargs["port"] == 9100
