"""Nullifier set: ABSENT -> USED, never back."""
import threading

from services.crypto_core.nullifiers import NullifierSet


class TestNullifierSet:
    def test_claim_once(self):
        ns = NullifierSet()
        assert ns.claim("n1", owner="c1") is True
        assert ns.claim("n1", owner="c2") is False
        assert ns.owner_of("n1") == "c1"
        assert ns.is_used("n1")
        assert "n1" in ns

    def test_mark_used_is_idempotent_and_keeps_first_owner(self):
        ns = NullifierSet()
        ns.mark_used("n", owner="a")
        ns.mark_used("n", owner="b")
        assert len(ns) == 1
        assert ns.owner_of("n") == "a"

    def test_seeded_from_entries(self):
        ns = NullifierSet([("x", "cx"), ("y", None)])
        assert ns.is_used("x") and ns.is_used("y")
        assert sorted(ns.snapshot()) == [("x", "cx"), ("y", None)]

    def test_concurrent_claims_single_winner(self):
        ns = NullifierSet()
        wins = []
        barrier = threading.Barrier(16)

        def worker(i):
            barrier.wait()
            if ns.claim("contested", owner=f"c{i}"):
                wins.append(i)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(wins) == 1
        assert ns.owner_of("contested") == f"c{wins[0]}"
