"""
Golf Range Web Server — FastAPI + WebSocket

Runs the fixed-timestep physics loop and streams ball state to browser
clients over WebSocket. Rendering and unit display live in the client.
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from controller import RangeController, PHYSICS_PARAMS
from physics import BALL_RADIUS, BallState
import physics as _phys
from shot_presets import ShotPreset

logger = logging.getLogger(__name__)

# ── Controller ──────────────────────────────────────────────────────────────

ctrl = RangeController()


# ── Lifespan (startup/shutdown) ─────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    task = asyncio.create_task(game_loop())
    yield
    task.cancel()


app = FastAPI(lifespan=lifespan)

clients: list[WebSocket] = []

# Preset launches (keys 1-6), SI launch parameters taken from ShotPreset
PRESETS = {
    "1": (ShotPreset.driver,     "1: Driver"),
    "2": (ShotPreset.seven_iron, "2: 7 Iron"),
    "3": (ShotPreset.wedge,      "3: Wedge"),
    "4": (ShotPreset.fade,       "4: Fade"),
    "5": (ShotPreset.into_wind,  "5: Into wind"),
    "6": (ShotPreset.downwind,   "6: Downwind"),
}

# ── Physics params (live-editable module constants) ─────────────────────────

PARAM_DEFAULTS = {attr: getattr(_phys, attr) for attr, *_ in PHYSICS_PARAMS}

# ── Async game loop ─────────────────────────────────────────────────────────

TARGET_FPS = 60
FRAME_DT = 1.0 / TARGET_FPS


async def game_loop():
    """Main loop running at ~60 fps; physics runs on the controller's fixed step."""
    prev = time.perf_counter()

    while True:
        started = time.perf_counter()
        ctrl.step(started - prev)
        prev = started

        if clients:
            await _broadcast(_build_frame_message())

        remaining = FRAME_DT - (time.perf_counter() - started)
        await asyncio.sleep(max(remaining, 0.0))


async def _broadcast(text: str) -> None:
    stale = []
    for ws in list(clients):
        try:
            await ws.send_text(text)
        except (WebSocketDisconnect, RuntimeError):
            stale.append(ws)
    for ws in stale:
        if ws in clients:
            clients.remove(ws)


def _r(v, nd=4) -> list:
    return [round(float(x), nd) for x in v]


def _build_frame_message() -> str:
    """Serialize current state into a JSON frame message."""
    positions = ctrl.interpolated_positions()
    balls_data = []
    for i, snap in enumerate(ctrl.current or ctrl.world.snapshot()):
        balls_data.append({
            "index": i,
            "pos": _r(positions[i]),
            "vel": _r(snap.velocity, 3),
            "acc": _r(snap.acceleration, 3),
            "axis": _r(snap.rotation_axis),
            "spin": round(float(snap.spin_rate), 1),
            "gravity": _r(snap.gravity_force),
            "lift": _r(snap.lift_force),
            "drag": _r(snap.drag_force),
            "wind": _r(snap.wind_vector, 3),
            "height": round(float(snap.height), 3),
            "max_height": round(float(snap.max_height), 3),
            "state": snap.state.name,
        })

    events = list(ctrl.pending_events)
    ctrl.pending_events.clear()

    impacts = [{
        "type": ev["type"], "ball": ev["ball"],
        "speed": round(float(ev["speed"]), 3),
    } for ev in ctrl.physics_events]

    frame = {
        "type": "frame",
        "balls": balls_data,
        "events": events,
        "impacts": impacts,
        "status": ctrl.status_msg,
    }
    return json.dumps(frame, separators=(',', ':'))


# ── Command handlers ────────────────────────────────────────────────────────

def _launch_preset(key: str) -> None:
    fn, label = PRESETS[key]
    setup = fn(run=False)
    wind = setup["world"].wind
    ctrl.set_wind(wind.speed, wind.direction, wind.log_profile)
    ctrl.launch(**setup["launch"])
    ctrl.status_msg = f"Preset {label}"


def _param_table() -> list:
    """Every live-editable physics param with its current value and slider range."""
    return [
        {"attr": attr, "label": label, "value": round(getattr(_phys, attr), 6),
         "min": lo, "max": hi, "step": step}
        for attr, label, lo, hi, step in PHYSICS_PARAMS
    ]


def adjust_param(index: int, direction: int, fine: bool = False):
    """Nudge one param by a (tenth of a) slider step. None for a bad index."""
    if not 0 <= index < len(PHYSICS_PARAMS):
        logger.warning("adjust_param: no param at index %d", index)
        return None
    attr, _, lo, hi, step = PHYSICS_PARAMS[index]
    if fine:
        step /= 10.0
    value = min(hi, max(lo, getattr(_phys, attr) + direction * step))
    setattr(_phys, attr, value)
    logger.info("param %s -> %g", attr, value)
    return value


def reset_params() -> None:
    for attr, value in PARAM_DEFAULTS.items():
        setattr(_phys, attr, value)


async def handle_message(ws: WebSocket, msg: dict) -> None:
    cmd = msg.get("cmd", "")
    if cmd in ("launch", "wind", "clear", "set"):
        ctrl.dispatch(msg)
    elif cmd == "preset":
        key = str(msg.get("key", ""))
        if key in PRESETS:
            _launch_preset(key)
    elif cmd == "relaunch":
        ctrl.relaunch()
    elif cmd == "execute":
        ctrl.execute_command(msg.get("text", ""))
    elif cmd == "get_state":
        await ws.send_text(json.dumps({"type": "state", "data": ctrl.get_state()}))
    elif cmd == "get_params":
        await ws.send_text(json.dumps({"type": "params", "data": _param_table()}))
    elif cmd == "adjust_param":
        index = int(msg.get("index", 0))
        value = adjust_param(index, int(msg.get("direction", 0)), bool(msg.get("fine", False)))
        if value is not None:
            await ws.send_text(json.dumps(
                {"type": "param_update", "index": index, "value": round(value, 6)}))
    elif cmd == "reset_params":
        reset_params()
        await ws.send_text(json.dumps({"type": "params", "data": _param_table()}))
    else:
        logger.warning("unknown websocket cmd %r", cmd)


# ── WebSocket endpoint ──────────────────────────────────────────────────────

@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    clients.append(ws)
    logger.info("client connected (%d total)", len(clients))

    await ws.send_text(json.dumps(_init_payload()))

    try:
        while True:
            data = await ws.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                continue
            if isinstance(msg, dict):
                await handle_message(ws, msg)
    except WebSocketDisconnect:
        pass
    finally:
        if ws in clients:
            clients.remove(ws)
        logger.info("client disconnected (%d left)", len(clients))


def _init_payload() -> dict:
    return {
        "type": "init",
        "ball_radius": BALL_RADIUS,
        "sim_dt": ctrl.SIM_DT,
        "capacity": ctrl.world.pool.capacity,
        "states": [s.name for s in BallState],
        "presets": {k: label for k, (_, label) in PRESETS.items()},
    }


@app.get("/")
async def root():
    return _init_payload()


@app.get("/state")
async def state():
    return ctrl.get_state()


# ── Run with uvicorn ────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("server:app", host="0.0.0.0", port=8000, reload=False)
