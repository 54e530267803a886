"""
Shot Preset System
Typical launch conditions (driver, irons, wedge, shaped shots, wind) that
set up a World, launch one ball and optionally run it to rest.
"""

import math
from physics import World, Wind, CollisionGeometry, FlightTracker, horizontal_distance

# Range timestep, same as the live loop
_DT = 1.0 / 60.0
_MAX_T = 60.0

MPH_TO_MS = 0.44704


def _launch(speed_mph: float, angle_deg: float, heading_deg: float, spin_rpm: float,
            spin_axis_deg: float, wind: Wind = None, run: bool = True) -> dict:
    geometry = CollisionGeometry.flat_ground()
    world = World(1, wind=wind)
    launch = {
        "speed": speed_mph * MPH_TO_MS,
        "angle": math.radians(angle_deg),
        "heading": math.radians(heading_deg),
        "spin_rate": spin_rpm,
        "spin_angle": math.radians(spin_axis_deg),
    }
    world.spawn_ball(**launch)
    ball = world.pool[0]
    start = ball.start_position.copy()

    result = {"ball": ball, "world": world, "geometry": geometry, "launch": launch,
              "elapsed": 0.0, "ticks": 0, "apex": float(ball.position[1]),
              "first_roll_tick": None, "carry": 0.0, "total": 0.0}
    if run:
        tracker = FlightTracker(ball)
        world.simulate(geometry, _DT, _MAX_T, on_tick=tracker)
        result.update(elapsed=tracker.elapsed, ticks=tracker.ticks, apex=tracker.apex,
                      first_roll_tick=tracker.first_roll_tick)
        if ball.landing_position is not None:
            result["carry"] = horizontal_distance(ball.landing_position, start)
        result["total"] = horizontal_distance(ball.position, start)
    return result


class ShotPreset:
    """Each preset: world setup → launch → simulate → result dict."""

    @staticmethod
    def driver(run=True) -> dict:
        """Tour driver: 167 mph, 10.9°, 2600 rpm, straight."""
        return _launch(167.0, 10.9, 0.0, 2600.0, 0.0, run=run)

    @staticmethod
    def seven_iron(run=True) -> dict:
        """Seven iron: 120 mph, 16.3°, 7097 rpm."""
        return _launch(120.0, 16.3, 0.0, 7097.0, 0.0, run=run)

    @staticmethod
    def wedge(run=True) -> dict:
        """Pitching wedge: 102 mph, 24.2°, 9304 rpm."""
        return _launch(102.0, 24.2, 0.0, 9304.0, 0.0, run=run)

    @staticmethod
    def fade(spin_axis_deg=15.0, run=True) -> dict:
        """Driver with a tilted spin axis; the tilt bends the flight sideways."""
        return _launch(167.0, 10.9, 0.0, 2600.0, spin_axis_deg, run=run)

    @staticmethod
    def into_wind(wind_mph=20.0, log_profile=True, run=True) -> dict:
        """Driver straight into a headwind (wind blowing toward -z)."""
        wind = Wind(speed=wind_mph * MPH_TO_MS, direction=math.pi, log_profile=log_profile)
        return _launch(167.0, 10.9, 0.0, 2600.0, 0.0, wind=wind, run=run)

    @staticmethod
    def downwind(wind_mph=20.0, log_profile=True, run=True) -> dict:
        """Driver with a tailwind (wind blowing toward +z)."""
        wind = Wind(speed=wind_mph * MPH_TO_MS, direction=0.0, log_profile=log_profile)
        return _launch(167.0, 10.9, 0.0, 2600.0, 0.0, wind=wind, run=run)
