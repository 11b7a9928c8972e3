from __future__ import annotations

from authflow.auth.guard import SingleFlightGuard


def test_first_claim_wins_and_repeats_are_refused() -> None:
    g = SingleFlightGuard()
    assert g.try_claim("code-1") is True
    assert g.try_claim("code-1") is False
    assert g.claimed == "code-1"


def test_other_keys_refused_while_claim_outstanding() -> None:
    g = SingleFlightGuard()
    assert g.try_claim("code-1") is True
    assert g.try_claim("code-2") is False


def test_release_allows_new_keys_but_not_seen_ones() -> None:
    g = SingleFlightGuard()
    assert g.try_claim("code-1") is True
    g.release()
    assert g.claimed is None
    assert g.try_claim("code-1") is False
    assert g.try_claim("code-2") is True


def test_reset_forgets_everything() -> None:
    g = SingleFlightGuard()
    assert g.try_claim("ethereum") is True
    g.reset()
    assert g.try_claim("ethereum") is True


def test_guards_are_independent() -> None:
    a = SingleFlightGuard()
    b = SingleFlightGuard()
    assert a.try_claim("code-1") is True
    assert b.try_claim("code-1") is True


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_seen_keys_age_out_after_ttl() -> None:
    clock = _Clock()
    g = SingleFlightGuard(ttl_seconds=600, clock=clock)
    assert g.try_claim("code-1") is True
    g.release()

    clock.now = 599
    assert g.try_claim("code-1") is False
    clock.now = 601
    assert g.try_claim("code-2") is True
    assert len(g) == 1
    g.release()
    assert g.try_claim("code-1") is True


def test_seen_keys_are_capped() -> None:
    g = SingleFlightGuard(max_keys=10)
    for i in range(200):
        assert g.try_claim(f"junk{i}") is True
        g.release()
    assert len(g) == 10
    # The newest keys are still refused.
    assert g.try_claim("junk199") is False


def test_outstanding_claim_survives_pruning() -> None:
    clock = _Clock()
    g = SingleFlightGuard(ttl_seconds=10, max_keys=1, clock=clock)
    assert g.try_claim("slow-code") is True
    clock.now = 100
    assert g.try_claim("other") is False
    assert g.claimed == "slow-code"
