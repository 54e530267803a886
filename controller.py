"""
RangeController — Game Logic layer

Owns the World, the collision geometry and the fixed-timestep loop.
The presentation layer (server.py / any renderer) talks to it through:
  - pending_events  : rendering commands (spawn_ball, clear_balls, …)
  - physics_events  : bounce / roll / stop events from the World

Presentation calls:
  ctrl.step(frame_time)           : run zero or more fixed physics ticks
  ctrl.interpolated_positions()   : smooth positions between the last two ticks
  ctrl.pending_events             : list of dicts to consume and act on
  ctrl.physics_events             : list of impact dicts (sounds, markers)
"""

import copy
import json
import logging
import math
import os
import time
import numpy as np

from physics import (
    World, Wind, CollisionGeometry, BallState, FlightTracker, MAX_BALLS,
    horizontal_distance,
)
import physics as _phys

logger = logging.getLogger(__name__)


# ── Behaviour params editable through {"cmd": "set", "params": {...}} ─────────
# (attr, label, min, max, slider step); values outside [min, max] are rejected
PHYSICS_PARAMS = [
    ("RESTITUTION",       "Bounce Rest.",    0.0,   1.0,   0.01),
    ("MU_BOUNCE",         "Bounce Frict.",   0.0,   1.0,   0.01),
    ("ROLLING_FRICTION",  "Roll Frict. (N)", 0.0,   0.5,   0.005),
    ("MIN_BOUNCE_HEIGHT", "Roll Height",     0.0,   1.0,   0.01),
    ("SPIN_DECAY_TIME",   "Spin Decay (s)",  1.0, 100.0,   0.5),
    ("SPEED_EPSILON",     "Stop Speed^2",    1e-6,  1e-2,  1e-5),
]

PARAM_LIMITS = {attr: (lo, hi) for attr, _, lo, hi, _ in PHYSICS_PARAMS}


class RangeController:
    """Driving-range state: world, geometry, loop timing and commands."""

    # ── Class-level constants ─────────────────────────────────────────────────
    SIM_DT           = 1.0 / 60.0
    MAX_FRAME_TIME   = 0.25      # clamp after a stall to avoid runaway catch-up
    CAPACITY         = MAX_BALLS
    TRAIL_MAX_POINTS = 600
    GROUND_HALF_EXTENT = 500.0

    # ── Constructor ───────────────────────────────────────────────────────────

    def __init__(self, geometry: CollisionGeometry = None, capacity: int = None):
        self.world = World(capacity or self.CAPACITY)
        self.geometry = geometry or CollisionGeometry.flat_ground(self.GROUND_HALF_EXTENT)

        # Loop timing
        self.accumulator = 0.0
        self.tick_count  = 0
        self.previous: list = []
        self.current: list  = []

        # Last launch, reused by relaunch()
        self.last_launch: dict = {}

        # Trail data (positions only; drawing stays in the renderer)
        self.trail_positions: list[list] = []

        self.status_msg = ""

        # Event queues
        self.pending_events: list[dict] = []   # rendering commands
        self.physics_events: list[dict] = []   # impacts

    # ──────────────────────────────────────────────────────────────────────────
    # Main loop
    # ──────────────────────────────────────────────────────────────────────────

    def step(self, frame_time: float) -> int:
        """Accumulate frame time and run the fixed physics ticks it covers.

        Returns the number of ticks run this frame.
        """
        self.accumulator += min(max(frame_time, 0.0), self.MAX_FRAME_TIME)
        self.physics_events.clear()

        ticks = 0
        while self.accumulator >= self.SIM_DT:
            self.previous = self.current or self.world.snapshot()
            self.world.update(self.geometry, self.SIM_DT)
            self.current = self.world.snapshot()
            self.physics_events.extend(self.world.events)
            self._record_trails()
            self.accumulator -= self.SIM_DT
            self.tick_count += 1
            ticks += 1
        return ticks

    @property
    def alpha(self) -> float:
        """Fraction of a tick left in the accumulator, for render interpolation."""
        return self.accumulator / self.SIM_DT

    def interpolated_positions(self) -> list:
        """Ball positions blended between the previous and current tick."""
        alpha = self.alpha
        current = self.current or self.world.snapshot()
        positions = []
        for i, snap in enumerate(current):
            if i < len(self.previous):
                prev = self.previous[i].position
                positions.append(prev + (snap.position - prev) * alpha)
            else:
                positions.append(snap.position.copy())
        return positions

    def _record_trails(self) -> None:
        while len(self.trail_positions) < len(self.world.pool):
            self.trail_positions.append([])
        for trail, ball in zip(self.trail_positions, self.world.pool):
            if ball.state == BallState.IDLE:
                continue
            trail.append(ball.position.tolist())
            if len(trail) > self.TRAIL_MAX_POINTS:
                del trail[0]

    # ──────────────────────────────────────────────────────────────────────────
    # Ball management
    # ──────────────────────────────────────────────────────────────────────────

    def launch(self, speed: float, angle: float, heading: float = 0.0,
               spin_rate: float = 0.0, spin_angle: float = 0.0) -> bool:
        """Spawn a ball. Angles in radians, speed m/s, spin RPM."""
        ok = self.world.spawn_ball(speed, angle, heading, spin_rate, spin_angle)
        self.last_launch = {
            "speed": speed, "angle": angle, "heading": heading,
            "spin_rate": spin_rate, "spin_angle": spin_angle,
        }
        if not ok:
            self.status_msg = f"Max balls reached ({self.world.pool.capacity})."
            return False

        index = len(self.world.pool) - 1
        self.current = self.world.snapshot()
        self.pending_events.append({
            "type": "spawn_ball", "ball": index,
            "pos": self.world.pool[index].position.tolist(),
        })
        logger.info(
            "launch #%d: speed=%.2f m/s angle=%.2f° heading=%.2f° spin=%.0f rpm axis=%.2f°",
            index, speed, math.degrees(angle), math.degrees(heading),
            spin_rate, math.degrees(spin_angle),
        )
        self.status_msg = f"Ball {index + 1} launched."
        return True

    def relaunch(self) -> bool:
        if not self.last_launch:
            self.status_msg = "Nothing launched yet."
            return False
        return self.launch(**self.last_launch)

    def clear_balls(self) -> None:
        """Clear all balls and emit a clear_balls event."""
        self.world.clear()
        self.previous = []
        self.current = []
        self.trail_positions.clear()
        self.pending_events.append({"type": "clear_balls"})
        self.status_msg = "Cleared."
        logger.info("balls cleared")

    def set_wind(self, speed: float = None, direction: float = None,
                 log_profile: bool = None) -> None:
        """Update the wind between ticks; omitted fields keep their value."""
        if log_profile is not None and not isinstance(log_profile, bool):
            raise TypeError(f"log profile must be true or false, got {log_profile!r}")
        wind = self.world.wind
        if speed is not None:
            wind.speed = max(0.0, float(speed))
        if direction is not None:
            wind.direction = float(direction)
        if log_profile is not None:
            wind.log_profile = bool(log_profile)

    # ──────────────────────────────────────────────────────────────────────────
    # Headless simulation
    # ──────────────────────────────────────────────────────────────────────────

    def simulate_shot(
        self,
        speed: float,
        angle: float,
        heading: float = 0.0,
        spin_rate: float = 0.0,
        spin_angle: float = 0.0,
        *,
        wind: Wind | None = None,
        sim_dt: float | None = None,
        max_t: float = 60.0,
    ) -> dict:
        """Headless single-ball run to rest.

        Non-destructive: builds its own World, so the live balls, wind and
        timing are untouched.

        Args:
            speed, angle, heading, spin_rate, spin_angle: Launch parameters
                (m/s, rad, rad, RPM, rad).
            wind:   Wind override; defaults to a copy of the live wind.
            sim_dt: Physics timestep (default ``SIM_DT``).
            max_t:  Simulated-time cap in seconds.

        Returns:
            ``dict`` with keys:

            carry (float)
                Horizontal distance from the tee to the first impact (m).
            total (float)
                Horizontal distance from the tee to the resting point (m).
            lateral (float)
                Signed offset of the resting point from the launch line (m),
                positive along the +x axis rotated by the heading.
            apex (float)
                Highest ball-centre height above the tee datum (m).
            flight_time (float)
                Time until the first impact (s).
            bounces (int)
                Rebounds before rolling.
            sim_time (float)
                Simulated time until rest (or ``max_t``).
            state (str)
                Final phase name.
            position (list[float])
                Final position.
        """
        dt = sim_dt or self.SIM_DT
        world = World(1, wind=copy.deepcopy(wind if wind is not None else self.world.wind))
        world.spawn_ball(speed, angle, heading, spin_rate, spin_angle)
        ball = world.pool[0]
        start = ball.start_position.copy()

        tracker = FlightTracker(ball)
        t = world.simulate(self.geometry, dt, max_t, on_tick=tracker)

        landing = ball.landing_position if ball.landing_position is not None else ball.position
        # +x axis rotated by the heading: (cos h, 0, -sin h)
        side = np.array([math.cos(heading), 0.0, -math.sin(heading)])
        return {
            "carry":       horizontal_distance(landing, start),
            "total":       horizontal_distance(ball.position, start),
            "lateral":     float(np.dot(ball.position - start, side)),
            "apex":        tracker.apex,
            "flight_time": tracker.flight_time if tracker.flight_time is not None else t,
            "bounces":     ball.bounces,
            "sim_time":    t,
            "state":       ball.state.name,
            "position":    ball.position.tolist(),
        }

    # ──────────────────────────────────────────────────────────────────────────
    # State / commands
    # ──────────────────────────────────────────────────────────────────────────

    def get_state(self) -> dict:
        """Observable state of every active ball, SI units."""
        balls = []
        for snap in self.world.snapshot():
            balls.append({
                "state":        snap.state.name,
                "pos":          snap.position.tolist(),
                "vel":          snap.velocity.tolist(),
                "acc":          snap.acceleration.tolist(),
                "axis":         snap.rotation_axis.tolist(),
                "spin_rate":    snap.spin_rate,
                "forces": {
                    "gravity": snap.gravity_force.tolist(),
                    "lift":    snap.lift_force.tolist(),
                    "drag":    snap.drag_force.tolist(),
                    "net":     snap.net_force.tolist(),
                },
                "wind":         snap.wind_vector.tolist(),
                "height":       snap.height,
                "max_height":   snap.max_height,
            })
        wind = self.world.wind
        return {
            "balls": balls,
            "wind": {"speed": wind.speed, "direction": wind.direction,
                     "log_profile": wind.log_profile},
        }

    def get_state_json(self) -> str:
        return json.dumps(self.get_state(), separators=(',', ':'))

    def execute_command(self, text: str) -> None:
        """Parse a JSON command string and dispatch to handlers."""
        if not text:
            logger.warning("execute_command: empty text")
            return
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.warning("JSON parse error: %s", exc)
            self.status_msg = f"JSON error: {exc}"
            return
        if not isinstance(data, dict):
            self.status_msg = "Command must be a JSON object."
            return
        self.dispatch(data)

    def dispatch(self, data: dict) -> None:
        cmd = str(data.get("cmd", "")).lower().strip()
        logger.info("cmd=%s", cmd)
        try:
            if cmd == "launch":
                self._cmd_launch(data)
            elif cmd == "wind":
                self._cmd_wind(data)
            elif cmd == "clear":
                self.clear_balls()
            elif cmd == "set":
                self._cmd_set(data)
            elif cmd == "save":
                self._cmd_save(data)
            elif cmd == "load":
                self._cmd_load(data)
            else:
                self.status_msg = f"Unknown cmd '{cmd}'. Use launch/wind/clear/set/save/load."
                logger.warning("unknown command %r", cmd)
        except (TypeError, ValueError) as exc:
            self.status_msg = f"{cmd}: bad argument ({exc})"
            logger.warning("command %r rejected: %s", cmd, exc)

    def _cmd_launch(self, data: dict) -> None:
        """launch: angles in degrees, speed m/s, spin RPM."""
        self.launch(
            speed=float(data.get("speed", 0.0)),
            angle=math.radians(float(data.get("angle", 0.0))),
            heading=math.radians(float(data.get("heading", 0.0))),
            spin_rate=max(0.0, float(data.get("spin", 0.0))),
            spin_angle=math.radians(float(data.get("spin_axis", 0.0))),
        )

    def _cmd_wind(self, data: dict) -> None:
        direction = data.get("direction")
        self.set_wind(
            speed=data.get("speed"),
            direction=math.radians(float(direction)) if direction is not None else None,
            log_profile=data.get("log"),
        )
        w = self.world.wind
        self.status_msg = (
            f"wind: {w.speed:.2f} m/s  {math.degrees(w.direction):.0f}°  "
            f"log={'on' if w.log_profile else 'off'}"
        )

    def _cmd_set(self, data: dict) -> None:
        """set params: update physics module constants by name."""
        params = data.get("params")
        if not params or not isinstance(params, dict):
            self.status_msg = "set: 'params' field required."
            return
        updated, rejected = [], []
        for name, value in params.items():
            if name not in PARAM_LIMITS:
                logger.warning("set: unknown param %s", name)
                rejected.append(name)
                continue
            lo, hi = PARAM_LIMITS[name]
            try:
                number = float(value)
            except (TypeError, ValueError):
                number = math.nan
            if not (math.isfinite(number) and lo <= number <= hi):
                logger.warning("set: %s=%r outside [%g, %g]", name, value, lo, hi)
                rejected.append(name)
                continue
            setattr(_phys, name, number)
            updated.append(name)
        self.status_msg = f"set: {updated} updated."
        if rejected:
            self.status_msg += f" rejected: {rejected}"

    @staticmethod
    def _state_file(name: str) -> str:
        return name if name.endswith(".json") else name + ".json"

    def _cmd_save(self, data: dict) -> None:
        """save: write the live ball states to a JSON file (timestamped if unnamed)."""
        name = data.get("file") or time.strftime("range_%Y%m%d_%H%M%S")
        path = self._state_file(name)
        try:
            with open(path, "w", encoding="utf-8") as f:
                json.dump(self.get_state(), f, indent=2)
        except OSError as exc:
            logger.warning("save to %s failed: %s", path, exc)
            self.status_msg = f"save: {exc}"
            return
        logger.info("state saved to %s", path)
        self.status_msg = f"save: {len(self.world.pool)} balls -> {path}"

    def _cmd_load(self, data: dict) -> None:
        """load: restore ball states from a file written by 'save'."""
        if not data.get("file"):
            self.status_msg = "load: 'file' field required."
            return
        path = self._state_file(data["file"])
        try:
            with open(path, encoding="utf-8") as f:
                state = json.load(f)
        except FileNotFoundError:
            self.status_msg = f"load: not found: {path}"
            return
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("load from %s failed: %s", path, exc)
            self.status_msg = f"load: {exc}"
            return
        try:
            self.restore_state(state)
        except (TypeError, ValueError) as exc:
            logger.warning("load from %s rejected: %s", path, exc)
            self.status_msg = f"load: bad state file ({exc})"
            return
        logger.info("state loaded from %s", path)

    @staticmethod
    def _parse_wind(wind) -> tuple:
        if not isinstance(wind, dict):
            raise ValueError("'wind' must be an object")
        speed = wind.get("speed")
        direction = wind.get("direction")
        log_profile = wind.get("log_profile")
        if log_profile is not None and not isinstance(log_profile, bool):
            raise TypeError(f"log_profile must be true or false, got {log_profile!r}")
        return (None if speed is None else float(speed),
                None if direction is None else float(direction),
                log_profile)

    @staticmethod
    def _parse_ball(bd) -> dict:
        if not isinstance(bd, dict):
            raise ValueError("each ball must be an object")
        if "pos" not in bd:
            raise ValueError("ball without 'pos'")
        fields = {
            "position":      np.array(bd["pos"], dtype=float),
            "velocity":      np.array(bd.get("vel", [0.0, 0.0, 0.0]), dtype=float),
            "rotation_axis": np.array(bd.get("axis", [1.0, 0.0, 0.0]), dtype=float),
        }
        for name, vec in fields.items():
            if vec.shape != (3,) or not np.all(np.isfinite(vec)):
                raise ValueError(f"{name} must be three finite numbers")
        fields["spin_rate"] = float(bd.get("spin_rate", 0.0))
        fields["max_height"] = float(bd.get("max_height", 0.0))
        fields["state"] = BallState.__members__.get(bd.get("state"), BallState.IDLE)
        return fields

    def restore_state(self, state: dict) -> None:
        """Replace the live balls with the ones described by a get_state() dict.

        The whole state is checked first; a malformed one raises ValueError or
        TypeError and leaves the live balls untouched.
        """
        if not isinstance(state, dict):
            raise ValueError("state must be a JSON object")
        wind = self._parse_wind(state["wind"]) if state.get("wind") else None
        entries = state.get("balls", [])
        if not isinstance(entries, list):
            raise ValueError("'balls' must be a list")
        balls = [self._parse_ball(bd) for bd in entries]

        self.clear_balls()
        if wind is not None:
            self.set_wind(*wind)
        for fields in balls:
            if not self.world.spawn_ball(0.0, 0.0, 0.0, 0.0, 0.0):
                break
            ball = self.world.pool[len(self.world.pool) - 1]
            ball.position = fields["position"]
            ball.velocity = fields["velocity"]
            ball.rotation_axis = fields["rotation_axis"]
            ball.spin_rate = fields["spin_rate"]
            ball.spin_rate_at_bounce = ball.spin_rate
            ball.max_height = fields["max_height"]
            ball.state = fields["state"]
            self.pending_events.append({
                "type": "spawn_ball", "ball": len(self.world.pool) - 1,
                "pos": ball.position.tolist(),
            })
        self.current = self.world.snapshot()
        self.status_msg = f"load: {len(self.world.pool)} balls restored."

    # ──────────────────────────────────────────────────────────────────────────
    # Scripts
    # ──────────────────────────────────────────────────────────────────────────

    def execute_script(self, script: dict) -> None:
        """Execute a range script dict: optional wind, optional clear, one or more launches."""
        if script.get("clear", False):
            self.clear_balls()
        wind = script.get("wind")
        if wind:
            self._cmd_wind(wind)
        shots = script.get("shots") or ([script["launch"]] if "launch" in script else [])
        for shot in shots:
            self._cmd_launch(shot)

    def load_script_file(self, path: str) -> None:
        """Load and execute a range script from a .py file with a SCRIPT dict."""
        import importlib.util
        abs_path = os.path.abspath(path)
        if not os.path.exists(abs_path):
            self.status_msg = f"Script not found: {abs_path}"
            return
        spec = importlib.util.spec_from_file_location("_user_range_script", abs_path)
        mod  = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(mod)
        except Exception as exc:
            logger.warning("script %s failed to load: %s", abs_path, exc)
            self.status_msg = f"Script error: {exc}"
            return
        script = getattr(mod, "SCRIPT", None)
        if script is None:
            self.status_msg = f"No SCRIPT variable in {os.path.basename(abs_path)}"
            return
        self.execute_script(script)
