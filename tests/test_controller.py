"""
Controller Tests — fixed-step loop timing, interpolation, commands, scripts.

Identical launches must give bit-identical headless results.
"""

import sys
import os
import json
import math
import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import physics
from controller import RangeController
from physics import BallState, Wind

SCRIPTS_DIR = os.path.join(os.path.dirname(__file__), "..", "scripts")

DRIVER = dict(speed=74.6, angle=math.radians(10.9), heading=0.0,
              spin_rate=2600.0, spin_angle=0.0)


def binary_step_controller(**kwargs) -> RangeController:
    """Controller with a power-of-two step so accumulator math is exact."""
    ctrl = RangeController(**kwargs)
    ctrl.SIM_DT = 1.0 / 64.0
    return ctrl


class TestDeterminism:

    def test_simulate_shot_is_deterministic(self):
        res1 = RangeController().simulate_shot(**DRIVER)
        res2 = RangeController().simulate_shot(**DRIVER)
        assert res1 == res2, "identical launches must give identical results"

    def test_simulate_shot_sanity(self):
        res = RangeController().simulate_shot(**DRIVER)
        assert res["state"] == "IDLE"
        assert 100.0 < res["carry"] < 400.0
        assert res["total"] > res["carry"]
        assert res["bounces"] >= 1
        assert res["flight_time"] < res["sim_time"] < 60.0
        assert res["apex"] > 5.0
        assert abs(res["lateral"]) < 1e-9

    def test_simulate_shot_leaves_live_world_alone(self):
        ctrl = RangeController()
        ctrl.launch(**DRIVER)
        ctrl.step(0.5)
        before = ctrl.world.pool[0].position.copy()
        ticks = ctrl.tick_count

        ctrl.simulate_shot(40.0, math.radians(25.0), spin_rate=8000.0)

        assert len(ctrl.world.pool) == 1
        np.testing.assert_array_equal(ctrl.world.pool[0].position, before)
        assert ctrl.tick_count == ticks

    def test_headwind_shortens_carry(self):
        ctrl = RangeController()
        calm = ctrl.simulate_shot(**DRIVER)
        headwind = ctrl.simulate_shot(**DRIVER, wind=Wind(10.0, math.pi))
        assert headwind["carry"] < calm["carry"]

    def test_tilted_axis_curves_sideways(self):
        ctrl = RangeController()
        left = ctrl.simulate_shot(**{**DRIVER, "spin_angle": math.radians(15.0)})
        right = ctrl.simulate_shot(**{**DRIVER, "spin_angle": math.radians(-15.0)})
        assert left["lateral"] < -1.0
        assert right["lateral"] == pytest.approx(-left["lateral"], abs=1e-6)


class TestFixedStep:

    def test_exact_tick_count(self):
        ctrl = binary_step_controller()
        assert ctrl.step(1.0 / 64.0) == 1
        assert ctrl.step(3.0 / 64.0) == 3
        assert ctrl.tick_count == 4

    def test_partial_frame_accumulates(self):
        ctrl = binary_step_controller()
        assert ctrl.step(1.0 / 128.0) == 0
        assert ctrl.alpha == 0.5
        assert ctrl.step(1.0 / 128.0) == 1
        assert ctrl.alpha == 0.0

    def test_stall_is_clamped(self):
        ctrl = binary_step_controller()
        ticks = ctrl.step(10.0)
        assert ticks == int(ctrl.MAX_FRAME_TIME / ctrl.SIM_DT)

    def test_negative_frame_time_ignored(self):
        ctrl = binary_step_controller()
        assert ctrl.step(-1.0) == 0
        assert ctrl.accumulator == 0.0

    def test_interpolation_between_ticks(self):
        ctrl = binary_step_controller()
        ctrl.launch(**DRIVER)
        ctrl.step(1.0 / 64.0)
        prev = ctrl.previous[0].position
        cur = ctrl.current[0].position

        ctrl.step(1.0 / 128.0)
        blended = ctrl.interpolated_positions()[0]
        np.testing.assert_allclose(blended, (prev + cur) / 2.0)
        # Reading the blend mutates nothing
        np.testing.assert_array_equal(ctrl.interpolated_positions()[0], blended)
        np.testing.assert_array_equal(ctrl.current[0].position, cur)

    def test_physics_events_collected(self):
        ctrl = RangeController()
        ctrl.launch(20.0, math.radians(30.0))
        seen = []
        for _ in range(1200):
            ctrl.step(1.0 / 60.0)
            seen.extend(ev["type"] for ev in ctrl.physics_events)
            if "stop" in seen:
                break
        assert seen[0] == "bounce"
        assert seen[-1] == "stop"

    def test_trail_recorded_while_moving(self):
        ctrl = RangeController()
        ctrl.launch(**DRIVER)
        ctrl.step(0.25)
        assert len(ctrl.trail_positions) == 1
        assert len(ctrl.trail_positions[0]) > 0


class TestBallManagement:

    def test_launch_emits_spawn_event(self):
        ctrl = RangeController()
        assert ctrl.launch(**DRIVER)
        assert ctrl.pending_events[-1]["type"] == "spawn_ball"
        assert ctrl.world.pool[0].state == BallState.FLYING

    def test_capacity(self):
        ctrl = RangeController(capacity=1)
        assert ctrl.launch(**DRIVER)
        assert not ctrl.launch(**DRIVER)
        assert "Max balls" in ctrl.status_msg

    def test_relaunch(self):
        ctrl = RangeController()
        assert not ctrl.relaunch()
        ctrl.launch(**DRIVER)
        assert ctrl.relaunch()
        assert len(ctrl.world.pool) == 2

    def test_clear(self):
        ctrl = RangeController()
        ctrl.launch(**DRIVER)
        ctrl.step(0.1)
        ctrl.clear_balls()
        assert len(ctrl.world.pool) == 0
        assert ctrl.current == []
        assert ctrl.pending_events[-1]["type"] == "clear_balls"


class TestCommands:

    def test_launch_command_in_degrees(self):
        ctrl = RangeController()
        ctrl.execute_command(json.dumps(
            {"cmd": "launch", "speed": 70, "angle": 90, "spin": 2500}))
        ball = ctrl.world.pool[0]
        np.testing.assert_allclose(ball.velocity, [0.0, 70.0, 0.0], atol=1e-9)
        assert ball.spin_rate == 2500.0

    def test_bad_json(self):
        ctrl = RangeController()
        ctrl.execute_command("{launch")
        assert ctrl.status_msg.startswith("JSON error")

    def test_non_object_json(self):
        ctrl = RangeController()
        ctrl.execute_command("[1, 2]")
        assert "JSON object" in ctrl.status_msg

    def test_unknown_command(self):
        ctrl = RangeController()
        ctrl.dispatch({"cmd": "teleport"})
        assert ctrl.status_msg.startswith("Unknown cmd")

    def test_bad_argument_is_reported(self):
        ctrl = RangeController()
        ctrl.dispatch({"cmd": "launch", "speed": "fast"})
        assert "bad argument" in ctrl.status_msg
        assert len(ctrl.world.pool) == 0

    def test_wind_command(self):
        ctrl = RangeController()
        ctrl.dispatch({"cmd": "wind", "speed": 5, "direction": 90, "log": True})
        wind = ctrl.world.wind
        assert wind.speed == 5.0
        assert wind.direction == pytest.approx(math.pi / 2)
        assert wind.log_profile is True

    def test_wind_command_keeps_omitted_fields(self):
        ctrl = RangeController()
        ctrl.dispatch({"cmd": "wind", "speed": 5, "direction": 90})
        ctrl.dispatch({"cmd": "wind", "speed": 2})
        assert ctrl.world.wind.direction == pytest.approx(math.pi / 2)

    @pytest.mark.parametrize("flag", ["false", 0, 1, "", [True]])
    def test_wind_log_flag_must_be_boolean(self, flag):
        ctrl = RangeController()
        ctrl.dispatch({"cmd": "wind", "speed": 5, "log": flag})
        assert ctrl.world.wind.log_profile is False
        assert ctrl.world.wind.speed == 0.0
        assert "bad argument" in ctrl.status_msg

    def test_wind_log_flag_false(self):
        ctrl = RangeController()
        ctrl.set_wind(log_profile=True)
        ctrl.dispatch({"cmd": "wind", "log": False})
        assert ctrl.world.wind.log_profile is False

    def test_set_params(self, monkeypatch):
        monkeypatch.setattr(physics, "RESTITUTION", physics.RESTITUTION)
        ctrl = RangeController()
        ctrl.dispatch({"cmd": "set", "params": {"RESTITUTION": 0.3, "GRAVITY": 0.0}})
        assert physics.RESTITUTION == 0.3
        assert physics.GRAVITY == -9.81, "only behaviour params are editable"

    @pytest.mark.parametrize("name, value", [
        ("SPIN_DECAY_TIME", 0.0),
        ("SPIN_DECAY_TIME", -5.0),
        ("SPEED_EPSILON", -1e-4),
        ("RESTITUTION", 1.5),
        ("MU_BOUNCE", float("nan")),
        ("ROLLING_FRICTION", float("inf")),
        ("MIN_BOUNCE_HEIGHT", "high"),
    ])
    def test_set_rejects_out_of_range_values(self, name, value):
        before = getattr(physics, name)
        ctrl = RangeController()
        ctrl.launch(**DRIVER)
        ctrl.dispatch({"cmd": "set", "params": {name: value}})
        assert getattr(physics, name) == before
        assert "rejected" in ctrl.status_msg and name in ctrl.status_msg
        # The live loop keeps ticking
        assert ctrl.step(1.0 / 60.0) == 1

    def test_set_applies_valid_values_next_to_rejected_ones(self, monkeypatch):
        monkeypatch.setattr(physics, "MU_BOUNCE", physics.MU_BOUNCE)
        decay = physics.SPIN_DECAY_TIME
        ctrl = RangeController()
        ctrl.execute_command(json.dumps(
            {"cmd": "set", "params": {"MU_BOUNCE": 0.25, "SPIN_DECAY_TIME": 0}}))
        assert physics.MU_BOUNCE == 0.25
        assert physics.SPIN_DECAY_TIME == decay
        assert ctrl.status_msg == "set: ['MU_BOUNCE'] updated. rejected: ['SPIN_DECAY_TIME']"

    def test_set_accepts_range_limits(self, monkeypatch):
        monkeypatch.setattr(physics, "SPIN_DECAY_TIME", physics.SPIN_DECAY_TIME)
        ctrl = RangeController()
        ctrl.dispatch({"cmd": "set", "params": {"SPIN_DECAY_TIME": 1.0}})
        assert physics.SPIN_DECAY_TIME == 1.0

    def test_set_requires_params(self):
        ctrl = RangeController()
        ctrl.dispatch({"cmd": "set"})
        assert "'params'" in ctrl.status_msg

    def test_get_state_json(self):
        ctrl = RangeController()
        ctrl.launch(**DRIVER)
        state = json.loads(ctrl.get_state_json())
        assert len(state["balls"]) == 1
        ball = state["balls"][0]
        assert ball["state"] == "FLYING"
        assert set(ball["forces"]) == {"gravity", "lift", "drag", "net"}


class TestSaveLoad:

    def test_round_trip(self, tmp_path):
        ctrl = RangeController()
        ctrl.dispatch({"cmd": "wind", "speed": 3, "direction": 45})
        ctrl.launch(**DRIVER)
        ctrl.launch(40.0, math.radians(20.0), spin_rate=6000.0)
        ctrl.step(0.5)
        saved = [b.position.copy() for b in ctrl.world.pool]
        target = str(tmp_path / "range")

        ctrl.dispatch({"cmd": "save", "file": target})
        assert os.path.exists(target + ".json")

        ctrl.clear_balls()
        ctrl.set_wind(0.0, 0.0)
        ctrl.dispatch({"cmd": "load", "file": target})

        assert len(ctrl.world.pool) == 2
        for ball, pos in zip(ctrl.world.pool, saved):
            np.testing.assert_allclose(ball.position, pos)
            assert ball.state == BallState.FLYING
        assert ctrl.world.wind.speed == 3.0

    def test_load_missing_file(self, tmp_path):
        ctrl = RangeController()
        ctrl.dispatch({"cmd": "load", "file": str(tmp_path / "nope")})
        assert ctrl.status_msg.startswith("load: not found")

    @pytest.mark.parametrize("content", [
        {"balls": [{"vel": [1, 0, 0]}]},
        [1, 2, 3],
        "balls",
        {"balls": {"pos": [0, 0, 0]}},
        {"balls": [{"pos": [0, 1]}]},
        {"balls": [{"pos": [0, 1, 0], "spin_rate": "fast"}]},
        {"wind": [3, 0], "balls": []},
        {"wind": {"speed": 2, "log_profile": "false"}, "balls": []},
    ])
    def test_load_malformed_file_keeps_live_balls(self, tmp_path, content):
        target = tmp_path / "broken.json"
        target.write_text(json.dumps(content), encoding="utf-8")
        ctrl = RangeController()
        ctrl.launch(**DRIVER)
        ctrl.set_wind(4.0, 0.0)

        ctrl.execute_command(json.dumps({"cmd": "load", "file": str(target)}))

        assert ctrl.status_msg.startswith("load: bad state file")
        assert len(ctrl.world.pool) == 1
        assert ctrl.world.pool[0].state == BallState.FLYING
        assert ctrl.world.wind.speed == 4.0
        assert ctrl.pending_events[-1]["type"] == "spawn_ball"

    def test_restore_state_unknown_phase_is_idle(self):
        ctrl = RangeController()
        ctrl.restore_state({"balls": [{"pos": [1.0, 0.5, 2.0], "state": "HOVERING"}]})
        assert ctrl.world.pool[0].state == BallState.IDLE
        np.testing.assert_array_equal(ctrl.world.pool[0].position, [1.0, 0.5, 2.0])

    def test_load_requires_file(self):
        ctrl = RangeController()
        ctrl.dispatch({"cmd": "load"})
        assert "'file'" in ctrl.status_msg


class TestScripts:

    def test_driver_script(self):
        ctrl = RangeController()
        ctrl.load_script_file(os.path.join(SCRIPTS_DIR, "driver_shot.py"))
        assert len(ctrl.world.pool) == 1
        assert ctrl.world.pool[0].speed == pytest.approx(74.65)

    def test_wind_script(self):
        ctrl = RangeController()
        ctrl.load_script_file(os.path.join(SCRIPTS_DIR, "wedge_into_wind.py"))
        assert ctrl.world.wind.log_profile is True
        assert ctrl.world.wind.direction == pytest.approx(math.pi)

    def test_multi_shot_script_clears_first(self):
        ctrl = RangeController()
        ctrl.launch(**DRIVER)
        ctrl.load_script_file(os.path.join(SCRIPTS_DIR, "shot_shapes.py"))
        assert len(ctrl.world.pool) == 3

    def test_missing_script(self, tmp_path):
        ctrl = RangeController()
        ctrl.load_script_file(str(tmp_path / "missing.py"))
        assert ctrl.status_msg.startswith("Script not found")

    def test_script_without_script_dict(self, tmp_path):
        path = tmp_path / "empty.py"
        path.write_text("X = 1\n", encoding="utf-8")
        ctrl = RangeController()
        ctrl.load_script_file(str(path))
        assert ctrl.status_msg.startswith("No SCRIPT")

    def test_execute_script_dict(self):
        ctrl = RangeController()
        ctrl.execute_script({"launch": {"speed": 30.0, "angle": 45.0}})
        assert len(ctrl.world.pool) == 1
