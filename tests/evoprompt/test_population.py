"""Tests for the population store."""

import json

import pytest

from evoprompt.errors import NotFoundError, ValidationError
from evoprompt.interfaces import Candidate
from evoprompt.population import PopulationStore


def test_update_fitness_unknown_id_leaves_population_unchanged():
    store = PopulationStore()
    a = store.add("Solve the problem.", fitness=0.4)
    b = store.add("Think step by step.")
    before = [(c.id, c.fitness) for c in store]

    with pytest.raises(NotFoundError):
        store.update_fitness("cand_missing", 0.9)

    assert len(store) == 2
    assert [(c.id, c.fitness) for c in store] == before
    assert store.get(a.id).fitness == 0.4
    assert store.get(b.id).fitness is None


def test_best_candidate_is_none_until_something_is_evaluated():
    store = PopulationStore()
    assert store.best_candidate() is None

    store.add("Prompt one")
    assert store.best_candidate() is None

    best = store.add("Prompt two", fitness=0.8)
    store.add("Prompt three", fitness=0.3)
    assert store.best_candidate().id == best.id


def test_evaluated_candidates_preserve_insertion_order():
    store = PopulationStore()
    first = store.add("one", fitness=0.1)
    store.add("two")
    third = store.add("three", fitness=0.9)

    assert [c.id for c in store.evaluated_candidates()] == [first.id, third.id]
    assert [c.prompt for c in store.unevaluated_candidates()] == ["two"]


def test_insert_rejects_duplicates_and_empty_prompts():
    store = PopulationStore()
    candidate = store.insert(Candidate.create("Explain your reasoning."))

    with pytest.raises(ValidationError):
        store.insert(candidate)
    with pytest.raises(ValidationError):
        store.insert(Candidate.create("   "))
    assert len(store) == 1


@pytest.mark.parametrize("bad", [float("nan"), float("inf"), True])
def test_update_fitness_rejects_non_finite_values(bad):
    store = PopulationStore()
    candidate = store.add("Prompt")

    with pytest.raises(ValidationError):
        store.update_fitness(candidate.id, bad)
    assert store.get(candidate.id).fitness is None


def test_full_population_replaces_worst_only_for_better_candidates():
    store = PopulationStore(capacity=2)
    worst = store.add("weak prompt", fitness=0.2)
    store.add("strong prompt", fitness=0.9)

    with pytest.raises(ValidationError, match="population full"):
        store.add("also weak", fitness=0.1)
    with pytest.raises(ValidationError, match="population full"):
        store.add("unevaluated newcomer")

    newcomer = store.add("decent prompt", fitness=0.5)
    assert worst.id not in store
    assert newcomer.id in store
    assert len(store) == 2


def test_replace_keeps_position():
    store = PopulationStore()
    a = store.add("a prompt")
    b = store.add("b prompt")
    c = store.add("c prompt")
    fresh = Candidate.create("fresh prompt")

    store.replace(b.id, fresh)

    assert [cand.id for cand in store] == [a.id, fresh.id, c.id]
    with pytest.raises(NotFoundError):
        store.replace("cand_missing", Candidate.create("x"))


def test_get_best_and_statistics():
    store = PopulationStore(capacity=10)
    store.add("p1", fitness=0.2)
    store.add("p2", fitness=0.6)
    store.add("p3", fitness=0.4)
    store.add("p3")

    assert [c.fitness for c in store.get_best(limit=2)] == [0.6, 0.4]
    assert [c.fitness for c in store.get_best(min_fitness=0.3)] == [0.6, 0.4]

    stats = store.statistics()
    assert stats.size == 4
    assert stats.evaluated == 3
    assert stats.unevaluated == 1
    assert stats.best_fitness == 0.6
    assert stats.avg_fitness == pytest.approx(0.4)
    assert stats.unique_ratio == pytest.approx(0.75)


def test_snapshot_is_unaffected_by_later_mutation():
    store = PopulationStore()
    candidate = store.add("stable prompt")
    snapshot = store.snapshot()

    store.update_fitness(candidate.id, 0.7)
    store.add("another prompt")

    assert len(snapshot) == 1
    assert snapshot.candidates[0].fitness is None
    assert snapshot.generation == 0


def test_remove_and_next_generation():
    store = PopulationStore()
    candidate = store.add("gen0")
    assert store.next_generation() == 1
    later = store.add("gen1")

    assert later.generation == 1
    assert store.remove(candidate.id).id == candidate.id
    with pytest.raises(NotFoundError):
        store.remove(candidate.id)


def test_save_and_load_checkpoint(tmp_path):
    store = PopulationStore(capacity=5)
    store.add("Solve carefully.", fitness=0.5, metadata={"origin": "seed"})
    store.add("Answer briefly.")
    store.next_generation()
    path = tmp_path / "checkpoints" / "population.json"

    store.save(path)
    loaded = PopulationStore.load(path)

    assert loaded.capacity == 5
    assert loaded.generation == 1
    assert [c.to_dict() for c in loaded] == [c.to_dict() for c in store]


def test_load_rejects_missing_and_malformed_files(tmp_path):
    with pytest.raises(NotFoundError):
        PopulationStore.load(tmp_path / "absent.json")

    bad_json = tmp_path / "bad.json"
    bad_json.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValidationError):
        PopulationStore.load(bad_json)

    wrong_version = tmp_path / "v99.json"
    wrong_version.write_text(json.dumps({"version": 99, "candidates": []}), encoding="utf-8")
    with pytest.raises(ValidationError):
        PopulationStore.load(wrong_version)
