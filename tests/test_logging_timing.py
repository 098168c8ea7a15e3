from __future__ import annotations

import logging

from core.logging_utils import get_log_level_from_env, get_rank, is_root_rank, setup_logging
from core.timing import timed


class _Comm:
    def __init__(self, rank: int) -> None:
        self.rank = rank

    def getRank(self) -> int:
        return self.rank


def test_log_level_from_env(monkeypatch):
    monkeypatch.delenv("LINSOLVE_LOG_LEVEL", raising=False)
    monkeypatch.delenv("LINSOLVE_PETSC_DEBUG", raising=False)
    assert get_log_level_from_env("WARNING") == logging.WARNING

    monkeypatch.setenv("LINSOLVE_PETSC_DEBUG", "on")
    assert get_log_level_from_env() == logging.DEBUG

    monkeypatch.setenv("LINSOLVE_LOG_LEVEL", "error")
    assert get_log_level_from_env() == logging.ERROR


def test_rank_from_comm():
    assert get_rank(_Comm(3)) == 3
    assert is_root_rank(_Comm(0))
    assert not is_root_rank(_Comm(1))


def test_setup_logging_quiets_non_root():
    root = logging.getLogger()
    handler = logging.StreamHandler()
    root.addHandler(handler)
    saved = root.level
    try:
        setup_logging(1, level=logging.DEBUG)
        assert handler.level == logging.WARNING
        setup_logging(0, level=logging.DEBUG)
        assert handler.level == logging.DEBUG
    finally:
        root.removeHandler(handler)
        root.setLevel(saved)


def test_timed_measures_block():
    with timed() as t:
        sum(range(1000))
    assert t.seconds >= 0.0
