"""
Command Store 테스트
"""
import threading

import pytest

from gcode_simulator.command_store import CommandStore
from gcode_simulator.errors import CommandIndexError, StoreCorruptionError
from gcode_simulator.parser import parse_line, parse_lines


def _commands(count, start=0):
    return [parse_line(f"G1 X{i}", i + 1) for i in range(start, start + count)]


class TestCommandStore:

    def test_append_and_get(self):
        store = CommandStore()
        assert store.append(_commands(3)) == 3
        assert len(store) == 3
        assert store.get(1).params["X"] == 1.0
        assert store[2].params["X"] == 2.0

    def test_get_out_of_range(self):
        store = CommandStore()
        store.append(_commands(2))
        with pytest.raises(CommandIndexError):
            store.get(2)
        with pytest.raises(IndexError):
            store.get(-1)

    def test_total_uses_declared_count(self):
        """스트리밍 중 total() = max(loaded, declared)"""
        store = CommandStore()
        store.declare(5)
        store.append(_commands(3))
        assert store.loaded_count == 3
        assert store.total() == 5
        assert store.is_streaming
        assert store.has_pending

    def test_finish_with_error_reconciles_declared(self):
        store = CommandStore()
        store.declare(5)
        store.append(_commands(3))
        store.finish(error="source failed")
        assert store.total() == 3
        assert store.error == "source failed"
        assert not store.has_pending

    def test_clean_finish_with_missing_commands_is_corruption(self):
        store = CommandStore()
        store.declare(4)
        store.append(_commands(2))
        with pytest.raises(StoreCorruptionError):
            store.finish()

    def test_append_after_finish_rejected(self):
        store = CommandStore()
        store.finish()
        with pytest.raises(StoreCorruptionError):
            store.append(_commands(1))

    def test_negative_declare_rejected(self):
        with pytest.raises(ValueError):
            CommandStore().declare(-1)

    def test_slice_is_a_copy(self):
        store = CommandStore()
        store.append(_commands(5))
        window = store.slice(1, 3)
        assert [c.params["X"] for c in window] == [1.0, 2.0]
        window.clear()
        assert len(store) == 5

    def test_clear(self):
        store = CommandStore()
        store.declare(3)
        store.append(_commands(3))
        store.finish()
        store.clear()
        assert len(store) == 0
        assert store.total() == 0
        assert not store.is_finished

    def test_total_layers_counts_distinct_heights(self):
        store = CommandStore()
        store.append(parse_lines(["G1 Z0.2", "G1 X1", "G1 Z0.4", "G0 Z0.4", "M104 S200"]))
        assert store.total_layers == 2

    def test_total_layers_minimum_one(self):
        assert CommandStore().total_layers == 1

    def test_concurrent_append_is_atomic_for_readers(self):
        """읽는 쪽은 절반만 추가된 배치를 보지 않는다"""
        store = CommandStore()
        batch = 100
        observed = []

        def writer():
            for i in range(50):
                store.append(_commands(batch, start=i * batch))

        thread = threading.Thread(target=writer)
        thread.start()
        while thread.is_alive():
            observed.append(len(store.slice(0, 10 ** 9)))
        thread.join()
        observed.append(len(store.slice(0, 10 ** 9)))

        assert all(n % batch == 0 for n in observed)
        assert observed == sorted(observed)
        assert observed[-1] == 50 * batch


class TestPendingState:

    def test_fresh_store_has_nothing_pending(self):
        """적재가 시작되지 않은 저장소는 기다릴 것이 없다"""
        store = CommandStore()
        assert not store.is_started
        assert not store.has_pending
        assert not store.is_streaming

    def test_begin_marks_pending(self):
        store = CommandStore()
        store.begin()
        assert store.has_pending
        assert store.is_streaming
        store.finish()
        assert not store.has_pending

    def test_clear_drops_pending(self):
        store = CommandStore()
        store.declare(3)
        store.append(_commands(1))
        assert store.has_pending

        store.clear()
        assert not store.has_pending
        assert not store.is_streaming


class TestModelBounds:

    def test_empty_store_has_no_bounds(self):
        bounds = CommandStore().bounds
        assert bounds.is_empty
        assert bounds.to_model() is None

    def test_absolute_moves(self, build_store, scenario_a):
        model = build_store(scenario_a).bounds.to_model()
        assert (model.min.x, model.min.y, model.min.z) == (0.0, 0.0, 0.0)
        assert (model.max.x, model.max.y, model.max.z) == (10.0, 10.0, 0.0)
        assert (model.size.x, model.size.y, model.size.z) == (10.0, 10.0, 0.0)

    def test_non_motion_commands_ignored(self):
        store = CommandStore()
        store.append(parse_lines(["M104 S200", "G28", "G1 X5 Y-2 Z0.3"]))
        model = store.bounds.to_model()
        assert (model.min.x, model.min.y, model.min.z) == (5.0, -2.0, 0.3)
        assert model.max.x == 5.0

    def test_relative_and_offset_moves_across_batches(self):
        """G91 상대 이동과 G92 재설정이 배치 경계를 넘어 유지된다"""
        store = CommandStore()
        store.append(parse_lines(["G1 X10 Y10", "G91"]))
        store.append(parse_lines(["G1 X5 Z2", "G1 X5"], start_line=3))
        store.append(parse_lines(["G90", "G92 X0", "G1 Y-4"], start_line=5))

        model = store.bounds.to_model()
        assert (model.min.x, model.max.x) == (0.0, 20.0)
        assert (model.min.y, model.max.y) == (-4.0, 10.0)
        assert (model.min.z, model.max.z) == (0.0, 2.0)

    def test_bounds_is_a_copy(self, build_store, scenario_a):
        store = build_store(scenario_a)
        store.bounds.update(100.0, 100.0, 100.0)
        assert store.bounds.max_x == 10.0

    def test_clear_resets_bounds(self, build_store, scenario_a):
        store = build_store(scenario_a)
        store.clear()
        assert store.bounds.is_empty
        store.append(parse_lines(["G91", "G1 X1"]))
        assert store.bounds.max_x == 1.0
