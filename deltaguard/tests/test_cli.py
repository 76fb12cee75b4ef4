"""Tests for the command line entry point."""

from __future__ import annotations

import os
from unittest import mock

from deltaguard.__main__ import main


def _run(argv: list[str]) -> int:
    with mock.patch.dict(os.environ, {}, clear=True):
        return main(argv)


class TestCli:
    def test_realized(self, capsys) -> None:
        assert _run(["realized", "--initial", "2000", "--current", "4000"]) == 0
        assert "Impermanent loss:  5.72%" in capsys.readouterr().out

    def test_predict(self, capsys) -> None:
        code = _run([
            "predict", "--price", "2000", "--lower", "1800", "--upper", "2200",
            "--volatility", "0.5", "--days", "30", "--fee-apy-bp", "2000",
        ])
        out = capsys.readouterr().out
        assert code == 0
        assert "Exit probability:" in out
        assert "Confidence:        70.00%" in out
        assert "Stay deployed" in out

    def test_curve(self, capsys) -> None:
        assert _run(["curve", "--price", "2000", "--points", "5"]) == 0
        lines = capsys.readouterr().out.strip().splitlines()
        assert len(lines) == 6

    def test_backtest(self, tmp_path, capsys) -> None:
        rows = ["timestamp,price"]
        for i in range(20):
            rows.append(f"{1_700_000_000 + i * 86_400},{2000 + (20 if i % 2 else 0)}")
        path = tmp_path / "prices.csv"
        path.write_text("\n".join(rows) + "\n")
        assert _run(["backtest", str(path), "--horizon-days", "3"]) == 0
        assert "Predictions:       11" in capsys.readouterr().out

    def test_invalid_input_returns_error(self, capsys) -> None:
        code = _run([
            "predict", "--price", "2000", "--lower", "2200", "--upper", "1800",
            "--volatility", "0.5",
        ])
        assert code == 2
        assert "Error:" in capsys.readouterr().err
