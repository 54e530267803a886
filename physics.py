"""
3D Golf Ball Flight Physics Engine
Flight (lift/drag/wind), Bounce (two-plane friction model), Roll
"""

import enum
import logging
import math
import numpy as np
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

# ──────────────────────────────────────────────
# Constants (SI units, y up)
# ──────────────────────────────────────────────
BALL_RADIUS: float = 0.02135  # m  (42.7mm regulation ball)
BALL_MASS: float = 0.0459  # kg
GRAVITY: float = -9.81  # m/s^2, along y
TEE_HEIGHT: float = 0.0381  # m  (1.5 in)

# 0.5 * reference area (0.001425 m^2) * air density (1.2 kg/m^3)
AERO_K: float = 0.0008551855026042919

RPM_TO_RAD_S: float = 0.10471975511965977
RAD_S_TO_RPM: float = 9.549296585513727

# Log wind profile
WIND_REFERENCE_HEIGHT: float = 10.0  # m
WIND_ROUGHNESS_LENGTH: float = 0.4  # m

# Pool / geometry capacities
MAX_BALLS: int = 100
MAX_VERTICES: int = 1_000_000
MAX_TRIANGLES: int = 1_000_000

# ── Runtime-editable behavior constants ───────────────────────────────────────
# These are read by name every call, so the server can mutate them live via:
#   import physics as _phys;  _phys.RESTITUTION = 0.45
RESTITUTION: float = 0.5            # normal restitution on ground impact
MU_BOUNCE: float = 0.4              # ball-ground friction coefficient during impact
ROLLING_FRICTION: float = 0.04      # N, constant friction force while rolling
MIN_BOUNCE_HEIGHT: float = 0.1      # m, apex at or below this -> start rolling
SPIN_DECAY_TIME: float = 24.5       # s, exponential spin decay time constant
SPEED_EPSILON: float = 1e-4         # m^2/s^2, rolling stops at or below this

# Tangential speed^2 below which the bounce frame has no defined x axis
DEGENERATE_TANGENT_SQ: float = 1e-12

# Lift/drag pairs by [speed^2 bucket][spin bucket], wind-tunnel data
COEFFICIENT_TABLE: Tuple[Tuple[Tuple[float, float], ...], ...] = (
    ((-0.11, 0.52), (-0.06, 0.39), (0.06, 0.36), (0.35, 0.42), (0.39, 0.40), (0.41, 0.48), (0.49, 0.52)),
    (( 0.00, 0.33), ( 0.12, 0.25), (0.18, 0.28), (0.33, 0.36), (0.36, 0.38), (0.38, 0.43), (0.45, 0.45)),
    (( 0.06, 0.22), ( 0.17, 0.24), (0.24, 0.27), (0.29, 0.31), (0.33, 0.34), (0.34, 0.37), (0.39, 0.39)),
    (( 0.07, 0.23), ( 0.14, 0.23), (0.19, 0.25), (0.24, 0.28), (0.28, 0.30), (0.31, 0.33), (0.35, 0.36)),
    (( 0.07, 0.24), ( 0.13, 0.24), (0.16, 0.25), (0.20, 0.27), (0.24, 0.28), (0.27, 0.30), (0.31, 0.34)),
    (( 0.07, 0.24), ( 0.12, 0.24), (0.15, 0.25), (0.18, 0.26), (0.21, 0.26), (0.24, 0.29), (0.28, 0.32)),
    (( 0.08, 0.25), ( 0.12, 0.25), (0.14, 0.25), (0.17, 0.26), (0.19, 0.26), (0.22, 0.28), (0.26, 0.29)),
    (( 0.08, 0.25), ( 0.12, 0.25), (0.14, 0.25), (0.16, 0.26), (0.18, 0.26), (0.20, 0.28), (0.23, 0.29)),
    (( 0.07, 0.25), ( 0.11, 0.25), (0.13, 0.25), (0.15, 0.26), (0.17, 0.26), (0.18, 0.27), (0.22, 0.28)),
    (( 0.07, 0.24), ( 0.11, 0.24), (0.13, 0.25), (0.15, 0.26), (0.16, 0.26), (0.17, 0.27), (0.20, 0.27)),
)

# Lower bounds (exclusive) of rows 1..9 and columns 1..6
SPEED_SQ_THRESHOLDS: Tuple[float, ...] = (338.0, 705.0, 1226.0, 1874.0, 2654.0, 3588.0, 4698.0, 5939.0, 7249.0)
SPIN_RATE_THRESHOLDS: Tuple[float, ...] = (500.0, 1433.0, 2340.0, 3283.0, 4223.0, 5478.0)


class BallState(enum.Enum):
    IDLE = 0
    FLYING = 1
    ROLLING = 2


# ──────────────────────────────────────────────
# Vector helpers
# ──────────────────────────────────────────────
def _vec(values=(0.0, 0.0, 0.0)) -> np.ndarray:
    return np.array(values, dtype=float)


def _normalize(v: np.ndarray) -> np.ndarray:
    return v / np.linalg.norm(v)


def rotate_x(v: np.ndarray, angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    return np.array([v[0], v[1] * c - v[2] * s, v[1] * s + v[2] * c])


def rotate_y(v: np.ndarray, angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    return np.array([v[0] * c + v[2] * s, v[1], -v[0] * s + v[2] * c])


def rotate_z(v: np.ndarray, angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    return np.array([v[0] * c - v[1] * s, v[0] * s + v[1] * c, v[2]])


# ──────────────────────────────────────────────
# Aerodynamic Model
# ──────────────────────────────────────────────
def _bucket(value: float, thresholds: Tuple[float, ...]) -> int:
    """Index of the highest threshold strictly below ``value`` plus one."""
    index = 0
    for i, threshold in enumerate(thresholds):
        if value > threshold:
            index = i + 1
    return index


def lift_drag_coefficients(ground_speed_sq: float, spin_rate: float) -> Tuple[float, float]:
    """Look up (lift, drag) coefficients.

    Nearest-bucket selection on squared ground-relative speed (m^2/s^2) and
    spin rate (RPM); values between thresholds are not interpolated.
    """
    row = _bucket(ground_speed_sq, SPEED_SQ_THRESHOLDS)
    col = _bucket(spin_rate, SPIN_RATE_THRESHOLDS)
    return COEFFICIENT_TABLE[row][col]


# ──────────────────────────────────────────────
# Force Accumulator
# ──────────────────────────────────────────────
@dataclass
class Wind:
    """Wind descriptor: speed (m/s), heading (rad), log altitude profile flag."""
    speed: float = 0.0
    direction: float = 0.0
    log_profile: bool = False


def gravity_force(mass: float = BALL_MASS) -> np.ndarray:
    return np.array([0.0, mass * GRAVITY, 0.0])


def wind_vector(wind: Wind, height: float) -> np.ndarray:
    """Horizontal wind velocity experienced at ``height`` above the datum."""
    vec = np.array([wind.speed * math.sin(wind.direction),
                    0.0,
                    wind.speed * math.cos(wind.direction)])
    if not wind.log_profile:
        return vec

    # Below the roughness length the profile would go negative
    h = max(height, WIND_ROUGHNESS_LENGTH)
    scale = (math.log(h / WIND_ROUGHNESS_LENGTH)
             / math.log(WIND_REFERENCE_HEIGHT / WIND_ROUGHNESS_LENGTH))
    return vec * scale


def ground_velocity(velocity: np.ndarray, wind: np.ndarray) -> np.ndarray:
    return velocity - wind


def lift_force(ground_vel: np.ndarray, rotation_axis: np.ndarray,
               lift_coefficient: float) -> np.ndarray:
    """Lift acts perpendicular to the relative motion and the spin axis."""
    speed_sq = float(np.dot(ground_vel, ground_vel))
    if speed_sq <= 0.0:
        return _vec()
    direction = np.cross(ground_vel, rotation_axis)
    norm = np.linalg.norm(direction)
    if norm == 0.0:
        # Spin axis parallel to the relative motion
        return _vec()
    return (direction / norm) * (AERO_K * lift_coefficient * speed_sq)


def drag_force(ground_vel: np.ndarray, drag_coefficient: float) -> np.ndarray:
    """Drag acts opposite to the relative motion."""
    speed_sq = float(np.dot(ground_vel, ground_vel))
    if speed_sq <= 0.0:
        return _vec()
    return -_normalize(ground_vel) * (AERO_K * drag_coefficient * speed_sq)


def decayed_spin_rate(spin_at_bounce: float, flight_time: float) -> float:
    """Spin rate (RPM) ``flight_time`` seconds after the last bounce or launch."""
    return spin_at_bounce * math.exp(-flight_time / SPIN_DECAY_TIME)


# ──────────────────────────────────────────────
# Collision Geometry / Query
# ──────────────────────────────────────────────
@dataclass(frozen=True, eq=False)
class CollisionHit:
    """Impact found by the swept-sphere query."""
    time: float
    point: np.ndarray
    normal: np.ndarray


class CollisionGeometry:
    """Static triangle soup used for ball collision.

    Vertices carry a position and a normal; each triangle stores three vertex
    indices and a face normal computed once as the normalized average of its
    vertex normals. All buffers are read-only after construction.
    """

    def __init__(self, positions, normals, indices):
        positions = np.array(positions, dtype=float).reshape(-1, 3)
        normals = np.array(normals, dtype=float).reshape(-1, 3)
        indices = np.array(indices, dtype=np.int64).reshape(-1, 3)

        if len(positions) != len(normals):
            raise ValueError(
                f"vertex buffers differ in length: {len(positions)} positions, "
                f"{len(normals)} normals"
            )
        if len(positions) > MAX_VERTICES:
            raise ValueError(f"{len(positions)} vertices exceeds capacity {MAX_VERTICES}")
        if len(indices) > MAX_TRIANGLES:
            raise ValueError(f"{len(indices)} triangles exceeds capacity {MAX_TRIANGLES}")
        if len(indices) and (indices.min() < 0 or indices.max() >= len(positions)):
            raise ValueError("triangle index out of range of the vertex buffer")

        face_normals = normals[indices].mean(axis=1) if len(indices) else np.zeros((0, 3))
        lengths = np.linalg.norm(face_normals, axis=1)
        if np.any(lengths == 0.0):
            raise ValueError("triangle with vertex normals that cancel out")
        face_normals = face_normals / lengths[:, None]

        self.positions = positions
        self.normals = normals
        self.indices = indices
        self.face_normals = face_normals
        # Plane of each triangle: point a and offset n.a
        self.plane_points = positions[indices[:, 0]] if len(indices) else np.zeros((0, 3))
        self.plane_offsets = np.einsum("ij,ij->i", face_normals, self.plane_points)

        for arr in (self.positions, self.normals, self.indices, self.face_normals,
                    self.plane_points, self.plane_offsets):
            arr.setflags(write=False)

    @property
    def vertex_count(self) -> int:
        return len(self.positions)

    @property
    def triangle_count(self) -> int:
        return len(self.indices)

    @classmethod
    def flat_ground(cls, half_extent: float = 500.0, height: float = 0.0) -> "CollisionGeometry":
        """Two-triangle square of side ``2 * half_extent`` at ``height``, facing up."""
        h = half_extent
        positions = [[-h, height, -h], [h, height, -h], [h, height, h], [-h, height, h]]
        normals = [[0.0, 1.0, 0.0]] * 4
        indices = [[0, 2, 1], [0, 3, 2]]
        return cls(positions, normals, indices)

    def merged(self, positions, normals, indices) -> "CollisionGeometry":
        """New geometry with another mesh appended; its indices are local to it."""
        offset = self.vertex_count
        return CollisionGeometry(
            np.vstack([self.positions, np.array(positions, dtype=float).reshape(-1, 3)]),
            np.vstack([self.normals, np.array(normals, dtype=float).reshape(-1, 3)]),
            np.vstack([self.indices, np.array(indices, dtype=np.int64).reshape(-1, 3) + offset]),
        )

    def sweep_sphere(self, position: np.ndarray, velocity: np.ndarray, radius: float,
                     dt: float) -> Tuple[Optional[CollisionHit], np.ndarray]:
        """Swept-sphere query against every triangle plane.

        Returns the first triangle in buffer order whose impact time lies in
        [0, dt], plus the heights of the ball above each triangle plane that
        was examined (all of them on a miss, up to the hit otherwise).
        """
        n = self.face_normals
        if not len(n):
            return None, np.zeros(0)

        # Signed distance to each plane, which is also the height above it
        dist = n @ position - self.plane_offsets
        heights = dist
        denom = n @ velocity
        overlap = np.abs(dist) <= radius
        approaching = denom * dist < 0.0
        signed_r = np.where(dist > 0.0, radius, -radius)
        with np.errstate(divide="ignore", invalid="ignore"):
            t = np.where(overlap, 0.0, (signed_r - dist) / denom)
        valid = (overlap | approaching) & (t >= 0.0) & (t <= dt)

        if not valid.any():
            return None, heights

        first = int(np.argmax(valid))
        if overlap[first]:
            point = position.copy()
        else:
            point = position + t[first] * velocity - signed_r[first] * n[first]
        hit = CollisionHit(time=float(t[first]), point=point, normal=n[first].copy())
        return hit, heights[:first + 1]


# ──────────────────────────────────────────────
# Rebound Resolver
# ──────────────────────────────────────────────
def _slide_xy(vx, vy, wz, e, mu, r):
    vrx = vx - mu * abs(vy) * (1.0 + e)
    wrz = (5.0 * mu * abs(vy)) / (2.0 * r) * (1.0 + e) - wz
    return vrx, wrz


def _roll_xy(vx, wz, r):
    vrx = (5.0 * vx - 2.0 * r * wz) / 7.0
    return vrx, vrx / r


def _slide_zy(vz, vy, wx, e, mu, r):
    vrz = vz - mu * abs(vy) * (1.0 + e)
    wrx = (5.0 * mu * abs(vy)) / (2.0 * r) * (1.0 + e) - wx
    return vrz, wrx


def _roll_zy(vz, wx, r):
    vrz = (5.0 * vz - 2.0 * r * wx) / 7.0
    return vrz, vrz / r


def _critical_mu(v_t: float, w: float, vy: float, e: float, r: float) -> float:
    """Friction coefficient separating sliding from rolling in one contact plane."""
    denom = 7.0 * vy * (1.0 + e)
    if denom == 0.0:
        # No normal impulse: resolve as rolling contact
        return -math.inf
    return 2.0 * (v_t + r * w) / denom


def compute_rebound(velocity: np.ndarray, rotation_axis: np.ndarray, spin_rate: float,
                    surface_normal: np.ndarray,
                    radius: float = BALL_RADIUS) -> Tuple[np.ndarray, np.ndarray, float]:
    """
    Resolve a ground impact.

    Works in a contact frame with y along the surface normal, x along the
    tangential part of the incoming velocity and z = x × y. Sliding versus
    rolling is decided separately in the xy and zy planes; the normal
    component always reflects with restitution.

    Args:
        velocity: Incoming velocity (m/s).
        rotation_axis: Unit spin axis.
        spin_rate: Spin magnitude (RPM).
        surface_normal: Unit normal of the impacted surface.

    Returns:
        (velocity, rotation_axis, spin_rate) after the bounce.
    """
    e = RESTITUTION
    mu = MU_BOUNCE
    r = radius
    n = np.asarray(surface_normal, dtype=float)

    v_n = float(np.dot(velocity, n))
    tangential = velocity - v_n * n
    if float(np.dot(tangential, tangential)) <= DEGENERATE_TANGENT_SQ:
        # No tangential direction to build the frame from: reflect only
        logger.warning(
            "Degenerate bounce basis (tangential speed ~0); "
            "applying restitution only, spin left unchanged"
        )
        return tangential - e * v_n * n, rotation_axis.copy(), spin_rate

    angular_velocity = spin_rate * RPM_TO_RAD_S * rotation_axis

    x_basis = _normalize(tangential)
    y_basis = n
    z_basis = _normalize(np.cross(x_basis, y_basis))
    T = np.vstack([x_basis, y_basis, z_basis])  # rows = basis, orthonormal

    vx, vy, vz = T @ velocity
    wx, wy, wz = T @ angular_velocity

    if mu < _critical_mu(vx, wz, vy, e, r):
        vrx, wrz = _slide_xy(vx, vy, wz, e, mu, r)
    else:
        vrx, wrz = _roll_xy(vx, wz, r)
    vry = -e * vy

    if mu < _critical_mu(vz, wx, vy, e, r):
        vrz, wrx = _slide_zy(vz, vy, wx, e, mu, r)
    else:
        vrz, wrx = _roll_zy(vz, wx, r)

    final_velocity = T.T @ np.array([vrx, vry, vrz])
    final_angular = T.T @ np.array([wrx, wy, wrz])

    omega = float(np.linalg.norm(final_angular))
    if omega > 0.0:
        axis = final_angular / omega
    else:
        axis = rotation_axis.copy()
    return final_velocity, axis, omega * RAD_S_TO_RPM


# ──────────────────────────────────────────────
# Ball State Machine
# ──────────────────────────────────────────────
@dataclass(frozen=True, eq=False)
class BallSnapshot:
    """Immutable copy of a ball's observable state for display and interpolation."""
    state: BallState
    position: np.ndarray
    velocity: np.ndarray
    acceleration: np.ndarray
    rotation_axis: np.ndarray
    spin_rate: float
    gravity_force: np.ndarray
    lift_force: np.ndarray
    drag_force: np.ndarray
    net_force: np.ndarray
    wind_vector: np.ndarray
    height: float
    max_height: float


@dataclass
class Ball:
    """Golf ball: kinematics, spin, per-step force breakdown and flight phase."""
    position: np.ndarray = field(default_factory=_vec)
    velocity: np.ndarray = field(default_factory=_vec)
    acceleration: np.ndarray = field(default_factory=_vec)
    rotation_axis: np.ndarray = field(default_factory=lambda: _vec((1.0, 0.0, 0.0)))
    spin_rate: float = 0.0
    state: BallState = BallState.IDLE
    radius: float = BALL_RADIUS
    mass: float = BALL_MASS

    start_position: np.ndarray = field(default_factory=_vec)
    wind_vector: np.ndarray = field(default_factory=_vec)
    gravity_force: np.ndarray = field(default_factory=_vec)
    lift_force: np.ndarray = field(default_factory=_vec)
    drag_force: np.ndarray = field(default_factory=_vec)
    net_force: np.ndarray = field(default_factory=_vec)

    spin_rate_at_bounce: float = 0.0
    flight_time: float = 0.0
    height: float = 0.0
    max_height: float = 0.0
    bounces: int = 0
    landing_position: Optional[np.ndarray] = None
    alive: bool = False

    def __post_init__(self):
        self.position = np.array(self.position, dtype=float)
        self.velocity = np.array(self.velocity, dtype=float)
        self.acceleration = np.array(self.acceleration, dtype=float)
        self.rotation_axis = np.array(self.rotation_axis, dtype=float)
        self.start_position = np.array(self.start_position, dtype=float)
        if not np.any(self.gravity_force):
            self.gravity_force = gravity_force(self.mass)

    @property
    def speed(self) -> float:
        return float(np.linalg.norm(self.velocity))

    @property
    def horizontal_speed_sq(self) -> float:
        return float(self.velocity[0] ** 2 + self.velocity[2] ** 2)

    def launch(self, speed: float, angle: float, heading: float,
               spin_rate: float, spin_angle: float) -> None:
        """
        Put the ball on the tee and start it flying.

        Args:
            speed: Launch speed (m/s).
            angle: Vertical launch angle (rad).
            heading: Horizontal launch direction (rad), 0 = +z.
            spin_rate: Launch spin (RPM).
            spin_angle: Spin-axis tilt (rad), 0 = pure backspin.
        """
        self.reset()
        self.start_position = np.array([0.0, TEE_HEIGHT + self.radius, 0.0])
        self.position = self.start_position.copy()
        self.velocity = rotate_y(rotate_x(_vec((0.0, 0.0, speed)), -angle), heading)
        self.rotation_axis = rotate_z(rotate_y(_vec((1.0, 0.0, 0.0)), heading), spin_angle)
        self.spin_rate = float(spin_rate)
        self.spin_rate_at_bounce = float(spin_rate)
        self.gravity_force = gravity_force(self.mass)
        self.state = BallState.FLYING
        self.alive = True

    def reset(self) -> None:
        """Return the slot to its zeroed, dead state."""
        for name in ("position", "velocity", "acceleration", "start_position",
                     "wind_vector", "lift_force", "drag_force", "net_force"):
            setattr(self, name, _vec())
        self.rotation_axis = _vec((1.0, 0.0, 0.0))
        self.gravity_force = gravity_force(self.mass)
        self.spin_rate = 0.0
        self.spin_rate_at_bounce = 0.0
        self.flight_time = 0.0
        self.height = 0.0
        self.max_height = 0.0
        self.bounces = 0
        self.landing_position = None
        self.state = BallState.IDLE
        self.alive = False

    def snapshot(self) -> BallSnapshot:
        return BallSnapshot(
            state=self.state,
            position=self.position.copy(),
            velocity=self.velocity.copy(),
            acceleration=self.acceleration.copy(),
            rotation_axis=self.rotation_axis.copy(),
            spin_rate=self.spin_rate,
            gravity_force=self.gravity_force.copy(),
            lift_force=self.lift_force.copy(),
            drag_force=self.drag_force.copy(),
            net_force=self.net_force.copy(),
            wind_vector=self.wind_vector.copy(),
            height=self.height,
            max_height=self.max_height,
        )

    # ── Integration ────────────────────────────
    def _integrate(self, dt: float) -> None:
        """Semi-implicit Euler."""
        self.acceleration = self.net_force / self.mass
        self.velocity = self.velocity + self.acceleration * dt
        self.position = self.position + self.velocity * dt

    # ── Flying ─────────────────────────────────
    def _simulate_flying(self, wind: Wind, dt: float) -> None:
        self.spin_rate = decayed_spin_rate(self.spin_rate_at_bounce, self.flight_time)
        self.wind_vector = wind_vector(wind, float(self.position[1]))

        ground_vel = ground_velocity(self.velocity, self.wind_vector)
        cl, cd = lift_drag_coefficients(float(np.dot(ground_vel, ground_vel)), self.spin_rate)

        self.lift_force = lift_force(ground_vel, self.rotation_axis, cl)
        self.drag_force = drag_force(ground_vel, cd)
        self.net_force = self.gravity_force + self.lift_force + self.drag_force

        self._integrate(dt)
        self.flight_time += dt

    def _check_collision(self, geometry: CollisionGeometry, dt: float) -> Optional[CollisionHit]:
        hit, heights = geometry.sweep_sphere(self.position, self.velocity, self.radius, dt)
        if len(heights):
            self.height = float(heights[-1])
            self.max_height = max(self.max_height, float(heights.max()))
        return hit

    def _handle_impact(self, hit: CollisionHit) -> str:
        logger.debug(
            "Collision detected: velocity=%s normal=%s rotation_axis=%s spin_rate=%.2f RPM",
            np.round(self.velocity, 2), np.round(hit.normal, 2),
            np.round(self.rotation_axis, 2), self.spin_rate,
        )
        self.position = hit.point + self.radius * hit.normal
        self.flight_time = 0.0
        if self.landing_position is None:
            self.landing_position = self.position.copy()

        if self.max_height <= MIN_BOUNCE_HEIGHT:
            self.max_height = 0.0
            self.state = BallState.ROLLING
            return "roll"

        self.velocity, self.rotation_axis, self.spin_rate = compute_rebound(
            self.velocity, self.rotation_axis, self.spin_rate, hit.normal, self.radius)
        self.spin_rate_at_bounce = self.spin_rate
        self.max_height = 0.0
        self.bounces += 1
        return "bounce"

    # ── Rolling ────────────────────────────────
    def _simulate_rolling(self, dt: float) -> Optional[str]:
        # Level-ground model: vertical motion and aerodynamics are switched off
        self.acceleration = _vec()
        self.lift_force = _vec()
        self.drag_force = _vec()
        self.velocity[1] = 0.0

        if self.horizontal_speed_sq > SPEED_EPSILON:
            self.net_force = -_normalize(self.velocity) * ROLLING_FRICTION
            self._integrate(dt)
            return None

        self.velocity = _vec()
        self.net_force = _vec()
        self.spin_rate = 0.0
        self.state = BallState.IDLE
        return "stop"

    # ── Main tick ──────────────────────────────
    def simulate(self, wind: Wind, geometry: CollisionGeometry, dt: float) -> Optional[str]:
        """Advance one fixed step. Returns "bounce", "roll", "stop" or None."""
        if not self.alive:
            return None

        if self.state == BallState.IDLE:
            return None
        if self.state == BallState.FLYING:
            self._simulate_flying(wind, dt)
            hit = self._check_collision(geometry, dt)
            if hit is None:
                return None
            return self._handle_impact(hit)
        if self.state == BallState.ROLLING:
            return self._simulate_rolling(dt)
        raise AssertionError(f"unhandled ball state: {self.state!r}")


# ──────────────────────────────────────────────
# Ball Pool
# ──────────────────────────────────────────────
class BallPool:
    """Fixed-capacity stack of ball slots; only the first ``active_count`` are live."""

    def __init__(self, capacity: int = MAX_BALLS):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._slots: List[Ball] = [Ball() for _ in range(capacity)]
        self.active_count = 0

    def __len__(self) -> int:
        return self.active_count

    def __iter__(self) -> Iterator[Ball]:
        return iter(self._slots[:self.active_count])

    def __getitem__(self, index: int) -> Ball:
        if index < 0:
            index += self.active_count
        if not 0 <= index < self.active_count:
            raise IndexError(f"ball index {index} out of range (active={self.active_count})")
        return self._slots[index]

    @property
    def full(self) -> bool:
        return self.active_count >= self.capacity

    def spawn(self, speed: float, angle: float, heading: float,
              spin_rate: float, spin_angle: float) -> bool:
        """Launch a new ball in the next free slot. False when the pool is full."""
        if self.full:
            logger.warning("Max balls reached (%d)", self.capacity)
            return False
        self._slots[self.active_count].launch(speed, angle, heading, spin_rate, spin_angle)
        self.active_count += 1
        return True

    def pop(self) -> None:
        """Clear the most recently spawned ball."""
        if self.active_count == 0:
            raise IndexError("pop from empty ball pool")
        self.active_count -= 1
        self._slots[self.active_count].reset()

    def clear(self) -> None:
        for ball in self:
            ball.reset()
        self.active_count = 0


# ──────────────────────────────────────────────
# World
# ──────────────────────────────────────────────
class World:
    """Ball pool plus wind, advanced one fixed step at a time."""

    def __init__(self, capacity: int = MAX_BALLS, wind: Optional[Wind] = None):
        self.pool = BallPool(capacity)
        self.wind = wind if wind is not None else Wind()
        self.events: list = []

    def spawn_ball(self, speed: float, angle: float, heading: float,
                   spin_rate: float, spin_angle: float) -> bool:
        return self.pool.spawn(speed, angle, heading, spin_rate, spin_angle)

    def clear(self) -> None:
        self.pool.clear()
        self.events.clear()

    def update(self, geometry: CollisionGeometry, dt: float) -> None:
        """Advance every active ball by ``dt`` seconds."""
        self.events.clear()
        for index, ball in enumerate(self.pool):
            speed = ball.speed
            event = ball.simulate(self.wind, geometry, dt)
            if event is not None:
                self.events.append({
                    "type": event, "ball": index,
                    "speed": speed,
                    "position": ball.position.tolist(),
                })

    def snapshot(self) -> List[BallSnapshot]:
        return [ball.snapshot() for ball in self.pool]

    def is_settled(self) -> bool:
        return all(ball.state == BallState.IDLE for ball in self.pool)

    def simulate(self, geometry: CollisionGeometry, dt: float = 1.0 / 60.0,
                 max_time: float = 60.0,
                 on_tick: Optional[Callable[[int, float], None]] = None) -> float:
        """
        Run until every ball is idle or max_time is reached.

        ``on_tick(ticks, elapsed)`` is called after every update.

        Returns:
            Elapsed time in seconds.
        """
        t = 0.0
        ticks = 0
        while t < max_time:
            self.update(geometry, dt)
            t += dt
            ticks += 1
            if on_tick is not None:
                on_tick(ticks, t)
            if self.is_settled():
                break
        return t


class FlightTracker:
    """Observer for ``World.simulate`` that follows one ball to rest.

    Records the apex height, the time of the first impact and the tick
    the ball first started rolling.
    """

    def __init__(self, ball: Ball):
        self.ball = ball
        self.apex = float(ball.position[1])
        self.ticks = 0
        self.elapsed = 0.0
        self.flight_time: Optional[float] = None
        self.first_roll_tick: Optional[int] = None

    def __call__(self, ticks: int, elapsed: float) -> None:
        ball = self.ball
        self.ticks = ticks
        self.elapsed = elapsed
        self.apex = max(self.apex, float(ball.position[1]))
        if self.flight_time is None and ball.landing_position is not None:
            self.flight_time = elapsed
        if self.first_roll_tick is None and ball.state == BallState.ROLLING:
            self.first_roll_tick = ticks


def horizontal_distance(a: np.ndarray, b: np.ndarray) -> float:
    """Distance between two points projected onto the ground plane."""
    return float(math.hypot(a[0] - b[0], a[2] - b[2]))
