from __future__ import annotations

import numpy as np
import pytest

from facegate.face.gallery import LabeledDescriptor, ReferenceSet
from facegate.face.matcher import EuclideanMatcher, MatcherConfig, MatcherSlot

from fakes import vec


def _matcher(pairs, threshold: float = 0.6) -> EuclideanMatcher:
    return EuclideanMatcher(ReferenceSet.from_pairs(pairs), MatcherConfig(threshold=threshold, device="cpu"))


def test_same_descriptor_matches_with_zero_distance():
    m = _matcher([("alice", vec(0.1, 0.2, 0.3, 0.4)), ("bob", vec(0.9, 0.1, 0.0, 0.2))])

    r = m.match(vec(0.1, 0.2, 0.3, 0.4))

    assert r.identity_id == "alice"
    assert r.accepted
    assert r.distance == pytest.approx(0.0, abs=1e-6)


def test_far_query_is_unknown_but_keeps_min_distance():
    m = _matcher([("alice", vec(0.0, 0.0, 0.0, 0.0))], threshold=0.6)

    r = m.match(vec(0.8, 0.0, 0.0, 0.0))

    assert r.identity_id == "unknown"
    assert not r.accepted
    assert r.distance == pytest.approx(0.8, abs=1e-6)
    assert r.threshold == pytest.approx(0.6)


def test_threshold_is_inclusive():
    m = _matcher([("alice", vec(0.0, 0.0))], threshold=0.5)

    assert m.match(vec(0.5, 0.0)).identity_id == "alice"
    assert m.match(vec(0.5, 0.01)).identity_id == "unknown"


def test_unknown_iff_min_distance_exceeds_threshold():
    rng = np.random.default_rng(7)
    refs = [(f"id{i % 4}", rng.normal(size=8).astype(np.float32)) for i in range(10)]
    stacked = np.stack([d for _, d in refs]).astype(np.float64)
    m = _matcher(refs, threshold=2.5)

    for _ in range(50):
        q = rng.normal(size=8).astype(np.float32)
        r = m.match(q)
        brute = float(np.min(np.linalg.norm(stacked - q.astype(np.float64), axis=1)))

        assert r.distance >= 0.0
        assert r.distance == pytest.approx(brute, rel=1e-5)
        assert (r.identity_id == "unknown") == (brute > 2.5)


def test_min_taken_across_all_descriptors_of_an_identity():
    m = _matcher(
        [
            ("alice", vec(1.0, 0.0)),
            ("bob", vec(0.0, 1.0)),
            ("alice", vec(0.0, 0.2)),
        ]
    )

    r = m.match(vec(0.0, 0.25))

    assert r.identity_id == "alice"
    assert r.distance == pytest.approx(0.05, abs=1e-6)


def test_tie_resolves_to_first_identity_in_reference_order():
    m = _matcher([("first", vec(1.0, 0.0)), ("second", vec(-1.0, 0.0))], threshold=2.0)

    results = {m.match(vec(0.0, 0.0)).identity_id for _ in range(5)}

    assert results == {"first"}


def test_match_is_idempotent_and_leaves_reference_set_untouched():
    ref = ReferenceSet.from_pairs([("alice", vec(0.1, 0.2)), ("bob", vec(0.5, 0.5))])
    before = [(e.identity_id, [d.copy() for d in e.descriptors]) for e in ref]
    m = EuclideanMatcher(ref, MatcherConfig(device="cpu"))

    first = m.match(vec(0.4, 0.4))
    second = m.match(vec(0.4, 0.4))

    assert first == second
    after = [(e.identity_id, list(e.descriptors)) for e in ref]
    assert [n for n, _ in before] == [n for n, _ in after]
    for (_, b), (_, a) in zip(before, after):
        for db, da in zip(b, a):
            np.testing.assert_array_equal(db, da)


def test_reference_descriptors_are_read_only():
    entry = LabeledDescriptor.create("alice", [vec(0.1, 0.2)])

    with pytest.raises(ValueError):
        entry.descriptors[0][0] = 1.0


def test_top_k_orders_identities_by_best_distance():
    m = _matcher([("a", vec(0.0, 0.0)), ("b", vec(3.0, 0.0)), ("c", vec(1.0, 0.0)), ("b", vec(0.5, 0.0))])

    top = m.top_k(vec(0.0, 0.0), k=2)

    assert [name for name, _ in top] == ["a", "b"]
    assert top[1][1] == pytest.approx(0.5)


def test_empty_reference_set_refused():
    with pytest.raises(ValueError):
        EuclideanMatcher(ReferenceSet(), MatcherConfig(device="cpu"))


def test_negative_threshold_rejected():
    with pytest.raises(ValueError):
        MatcherConfig(threshold=-0.1)


def test_slot_stays_empty_for_empty_set_and_swaps_wholesale():
    slot = MatcherSlot(MatcherConfig(device="cpu"))
    assert slot.replace(ReferenceSet()) is None
    assert not slot.ready

    first = slot.replace(ReferenceSet.from_pairs([("alice", vec(0.0, 0.0))]))
    held = slot.current
    second = slot.replace(ReferenceSet.from_pairs([("bob", vec(0.0, 0.0))]))

    assert held is first
    assert slot.current is second
    # A reader holding the old matcher still sees the old set.
    assert held.match(vec(0.0, 0.0)).identity_id == "alice"
    assert slot.current.match(vec(0.0, 0.0)).identity_id == "bob"

    slot.replace(ReferenceSet())
    assert slot.current is None


def test_non_finite_descriptor_is_never_accepted():
    m = _matcher([("alice", vec(0.0, 0.0)), ("bob", vec(1.0, 1.0))], threshold=0.6)

    for query in (vec(float("nan"), 0.0), vec(float("inf"), 0.0)):
        r = m.match(query)

        assert r.identity_id == "unknown"
        assert not r.accepted
        assert not np.isfinite(r.distance)

    assert all(not np.isfinite(d) for _, d in m.top_k(vec(float("nan"), 0.0), k=2))
