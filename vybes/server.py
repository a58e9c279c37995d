import asyncio
import json
import logging
import os
import time
from pathlib import Path
from typing import Any

from fastapi import Body, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import config_db
from . import validation as v
from .errors import InvalidArgument, VybesError
from .events import event_bus
from .logging_util import level_name
from .storage import describe_db_location, list_fir_files

APP_NAME = "Vybes"
WEB_ROOT = (os.getenv("VYBES_WEB_ROOT") or "").strip()
CORS_ORIGINS = [o.strip() for o in os.getenv("VYBES_CORS_ORIGINS", "*").split(",") if o.strip()]
SAMPLE_FIR_FILES = [
    "fir_flat.txt",
    "fir_room1.txt",
    "fir_room2.txt",
    "fir_speaker1.txt",
    "fir_speaker2.txt",
]

# Basic logging
logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
logger = logging.getLogger("vybes")
logger.info(
    "[startup] log_level=%s db=%s web_root=%s",
    level_name(),
    config_db.DB_PATH,
    WEB_ROOT or "-",
)

app = FastAPI(title="Vybes mock server")
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def _startup():
    event_bus.attach(asyncio.get_running_loop())
    config_db.init_db()
    logger.info("[startup] store ready at %s", config_db.DB_PATH)


@app.exception_handler(VybesError)
async def _vybes_error(request: Request, exc: VybesError):
    if exc.status_code >= 500:
        logger.error("[api] %s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse({"error": "Invalid request payload", "detail": "invalid_payload"}, status_code=400)


@app.exception_handler(StarletteHTTPException)
async def _http_error(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return JSONResponse({"error": "Endpoint not found", "detail": "not_found"}, status_code=404)
    return JSONResponse({"error": str(exc.detail), "detail": "http_error"}, status_code=exc.status_code)


@app.exception_handler(Exception)
async def _unexpected_error(request: Request, exc: Exception):
    logger.exception("[api] unhandled error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse({"error": "Internal server error", "detail": "internal_error"}, status_code=500)


def _emit(event: str, **fields: Any) -> None:
    event_bus.publish({"event": event, **fields})


def _int_or(raw: str | None, default: int | None) -> int | None:
    if raw is None or raw == "":
        return default
    try:
        return int(float(raw))
    except ValueError:
        return default


def _calibration() -> dict:
    raw = config_db.get_setting("calibration_spl")
    spl = _int_or(raw, None)
    return {"isCalibrated": spl is not None, "spl": spl}


@app.get("/health")
def health():
    return {
        "ok": True,
        "app": APP_NAME,
        "db": describe_db_location(config_db.DB_PATH),
        "subscribers": event_bus.subscriber_count(),
        "logLevel": level_name(),
    }


# --- calibration & system controls ---

@app.get("/calibration")
def get_calibration():
    return _calibration()


@app.put("/calibrate/{spl}")
def put_calibration(spl: str):
    value = v.calibration_spl(spl)
    config_db.set_setting("calibration_spl", value)
    _emit("calibration", spl=value)
    return {"success": True, "spl": value}


@app.get("/status")
def get_status():
    keys = [
        "subwoofer_state",
        "bypass_state",
        "mute_state",
        "mute_percent",
        "tone_frequency",
        "tone_volume",
        "noise_volume",
    ]
    s = config_db.get_settings(keys)
    return {
        "calibration": _calibration(),
        "subwoofer": s["subwoofer_state"] or "on",
        "bypass": s["bypass_state"] or "off",
        "mute": {
            "state": s["mute_state"] or "off",
            "percent": _int_or(s["mute_percent"], 0),
        },
        "tone": {
            "frequency": _int_or(s["tone_frequency"], 1000),
            "volume": _int_or(s["tone_volume"], 50),
        },
        "noise": {"volume": _int_or(s["noise_volume"], 0)},
        "currentPreset": config_db.get_active_preset(),
    }


def _put_state(key: str, event: str, state: str) -> dict:
    on = v.on_off(state)
    value = "on" if on else "off"
    config_db.set_setting(key, value)
    _emit(event, state=value)
    return {"success": True, "state": value}


@app.put("/sub/{state}")
def put_subwoofer(state: str):
    return _put_state("subwoofer_state", "subwoofer", state)


@app.put("/bypass/{state}")
def put_bypass(state: str):
    return _put_state("bypass_state", "bypass", state)


@app.put("/mute/percent/{percent}")
def put_mute_percent(percent: str):
    value = v.mute_percent(percent)
    config_db.set_setting("mute_percent", value)
    _emit("mute_percent", percent=value)
    return {"success": True, "percent": value}


@app.put("/mute/{state}")
def put_mute(state: str):
    return _put_state("mute_state", "mute", state)


# --- signal generator ---

@app.put("/generate/tone/stop")
def put_tone_stop():
    _emit("tone", frequency=0, volume=0, stopped=True)
    return {"success": True, "message": "Tone generation stopped"}


@app.put("/generate/tone/{freq}/{volume}")
def put_tone(freq: str, volume: str):
    frequency, vol = v.tone(freq, volume)
    config_db.set_settings({"tone_frequency": frequency, "tone_volume": vol})
    _emit("tone", frequency=frequency, volume=vol)
    return {"success": True, "frequency": frequency, "volume": vol}


@app.put("/generate/noise/{volume}")
def put_noise(volume: str):
    vol = v.noise_volume(volume)
    config_db.set_setting("noise_volume", vol)
    _emit("noise", volume=vol)
    return {"success": True, "volume": vol}


@app.put("/pulse")
def put_pulse():
    _emit("pulse", timestamp=int(time.time() * 1000))
    return {"success": True, "message": "Playing test pulse"}


# --- FIR filter files ---

@app.get("/fir/files")
def fir_files():
    files = list_fir_files()
    return files if files is not None else list(SAMPLE_FIR_FILES)


# --- presets ---

@app.get("/presets")
def list_presets():
    return config_db.list_presets()


@app.post("/preset/create/{name}", status_code=201)
def create_preset(name: str):
    name = v.preset_name(name)
    preset = config_db.create_preset(name)
    _emit("preset", action="created", name=name)
    return preset


@app.post("/preset/copy/{source}/{new_name}")
def copy_preset(source: str, new_name: str):
    new_name = v.preset_name(new_name)
    config_db.copy_preset(source, new_name)
    _emit("preset", action="copied", source=source, name=new_name)
    return {"success": True, "name": new_name}


@app.put("/preset/rename/{old}/{new}")
def rename_preset(old: str, new: str):
    new = v.preset_name(new)
    config_db.rename_preset(old, new)
    _emit("preset", action="renamed", oldName=old, newName=new)
    return {"success": True, "name": new}


@app.put("/preset/active/{name}")
def set_active_preset(name: str):
    config_db.set_active_preset(name)
    _emit("preset", action="activated", name=name)
    return {"success": True, "activePreset": name}


@app.get("/preset/{name}")
def get_preset(name: str):
    return config_db.get_preset(name)


@app.delete("/preset/{name}")
def delete_preset(name: str):
    config_db.delete_preset(name)
    _emit("preset", action="deleted", name=name)
    return {"success": True, "name": name}


# --- delays & gains ---

@app.get("/preset/{name}/delays")
def get_delays(name: str):
    return config_db.get_speaker_delays(name)


@app.put("/preset/delay/{speaker}/{delay_ms}")
def put_active_speaker_delay(speaker: str, delay_ms: str):
    spk = v.speaker(speaker)
    value = v.speaker_delay(delay_ms)
    name = config_db.set_active_speaker_delay(spk, value)
    _emit("speaker_delay", preset=name, speaker=spk, delayMs=value)
    return {"success": True, "preset": name, "speaker": spk, "delayMs": value}


@app.put("/preset/{name}/delay/enabled/{state}")
def put_delay_enabled(name: str, state: str):
    on = v.on_off(state)
    config_db.set_preset_flag(name, "speaker_delay", on)
    value = "on" if on else "off"
    _emit("is_speaker_delay_enabled", preset=name, state=value)
    return {"success": True, "preset": name, "state": value}


@app.put("/preset/{name}/delay/{speaker}/{delay_ms}")
def put_speaker_delay(name: str, speaker: str, delay_ms: str):
    spk = v.speaker(speaker)
    value = v.speaker_delay(delay_ms)
    config_db.set_speaker_delay(name, spk, value)
    _emit("speaker_delay", preset=name, speaker=spk, delayMs=value)
    return {"success": True, "preset": name, "speaker": spk, "delayMs": value}


@app.get("/preset/{name}/gains")
def get_gains(name: str):
    return config_db.get_speaker_gains(name)


@app.put("/preset/{name}/gain/{speaker}/{gain}")
def put_speaker_gain(name: str, speaker: str, gain: str):
    spk = v.speaker(speaker)
    value = v.speaker_gain(gain)
    config_db.set_speaker_gain(name, spk, value)
    _emit("speaker_gain", preset=name, speaker=spk, gain=value)
    return {"success": True, "preset": name, "speaker": spk, "gain": value}


# --- crossover ---

@app.get("/preset/{name}/crossover")
def get_crossover(name: str):
    return config_db.get_crossover(name)


@app.put("/preset/{name}/crossover/freq/{freq}")
def put_crossover_freq(name: str, freq: str):
    frequency = v.crossover_freq(freq)
    config_db.set_crossover_freq(name, frequency)
    _emit("crossover_updated", preset=name, frequency=frequency)
    return {"success": True, "frequency": frequency}


@app.put("/preset/{name}/crossover/enabled/{state}")
def put_crossover_enabled(name: str, state: str):
    on = v.on_off(state)
    config_db.set_preset_flag(name, "crossover", on)
    value = "on" if on else "off"
    _emit("crossover", preset=name, state=value)
    return {"success": True, "preset": name, "state": value}


# After freq/enabled so those literal segments are not read as a frequency.
@app.put("/preset/{name}/crossover/{freq}/{slope}")
def put_crossover(name: str, freq: str, slope: str):
    frequency = v.crossover_freq(freq)
    slope_db = v.crossover_slope(slope)
    config_db.set_crossover(name, frequency, slope_db)
    _emit("crossover", preset=name, frequency=frequency, slope=slope_db)
    return {"success": True, "preset": name, "frequency": frequency, "slope": slope_db}


@app.put("/preset/{name}/equal-loudness/{state}")
def put_equal_loudness(name: str, state: str):
    on = v.on_off(state)
    config_db.set_preset_flag(name, "equal_loudness", on)
    value = "on" if on else "off"
    _emit("equal_loudness", preset=name, state=value)
    return {"success": True, "preset": name, "state": value}


# --- FIR ---

@app.put("/preset/{name}/fir/enabled/{state}")
def put_fir_enabled(name: str, state: str):
    on = v.on_off(state)
    config_db.set_preset_flag(name, "fir", on)
    value = "on" if on else "off"
    _emit("fir_enabled", preset=name, state=value)
    return {"success": True, "preset": name, "state": value}


@app.put("/preset/{name}/fir/file/{channel}/{filter_name}")
def put_fir_file(name: str, channel: str, filter_name: str):
    chan = v.speaker(channel)
    config_db.set_fir_file(name, chan, filter_name)
    _emit("fir_updated", preset=name, channel=chan, filter=filter_name)
    return {"success": True, "channel": chan, "filter": filter_name}


# --- EQ sets ---

@app.get("/preset/{name}/eq/{eq_type}")
def list_eq_sets(name: str, eq_type: str):
    return config_db.list_eq_sets(name, v.eq_type(eq_type))


@app.put("/preset/{name}/eq/{eq_type}/enabled/{state}")
def put_eq_enabled(name: str, eq_type: str, state: str):
    if v.eq_type(eq_type) != "pref":
        raise InvalidArgument("Type must be \"pref\"", "invalid_eq_type")
    on = v.on_off(state)
    config_db.set_preset_flag(name, "preference_eq", on)
    value = "on" if on else "off"
    _emit("is_preference_eq_enabled", preset=name, state=value)
    return {"success": True, "preset": name, "state": value}


@app.post("/preset/{name}/eq/{eq_type}/{spl}")
@app.put("/preset/{name}/eq/{eq_type}/{spl}")
def upsert_eq_set(name: str, eq_type: str, spl: str, body: Any = Body(None)):
    kind = v.eq_type(eq_type)
    level = v.eq_spl(spl)
    points = v.peq_points(body)
    created = config_db.upsert_eq_set(name, kind, level, points)
    _emit("eq_created" if created else "eq_updated", preset=name, type=kind, spl=level, peqPoints=points)
    return {"success": True, "preset": name, "type": kind, "spl": level, "created": created}


@app.delete("/preset/{name}/eq/{eq_type}/{spl}")
def delete_eq_set(name: str, eq_type: str, spl: str):
    kind = v.eq_type(eq_type)
    level = v.eq_spl(spl)
    config_db.delete_eq_set(name, kind, level)
    _emit("eq_deleted", preset=name, type=kind, spl=level)
    return {"success": True, "preset": name, "type": kind, "spl": level}


# --- live updates ---

async def _pump(ws: WebSocket, q: asyncio.Queue) -> None:
    while True:
        event = await q.get()
        await ws.send_text(json.dumps(event))


@app.websocket("/live-updates")
async def live_updates(ws: WebSocket):
    # Subscribed before accept: events published after the handshake must reach this client.
    q = await event_bus.subscribe()
    await ws.accept()
    client = ws.client.host if ws.client else "unknown"
    logger.info("[ws] client connected %s subscribers=%s", client, event_bus.subscriber_count())
    sender = asyncio.create_task(_pump(ws, q))
    receive = None
    try:
        while True:
            # Inbound frames, text or binary, are read and ignored.
            receive = asyncio.ensure_future(ws.receive())
            done, _ = await asyncio.wait({receive, sender}, return_when=asyncio.FIRST_COMPLETED)
            if sender in done:
                exc = sender.exception()
                if exc:
                    logger.warning("[ws] send to %s failed: %r", client, exc)
                break
            if receive.result()["type"] == "websocket.disconnect":
                break
    except WebSocketDisconnect:
        pass
    finally:
        if receive is not None and not receive.done():
            receive.cancel()
        sender.cancel()
        await event_bus.unsubscribe(q)
        logger.info("[ws] client disconnected %s subscribers=%s", client, event_bus.subscriber_count())


# Frontend build output, mounted last so API routes win.
if WEB_ROOT and Path(WEB_ROOT).is_dir():
    app.mount("/", StaticFiles(directory=WEB_ROOT, html=True), name="web")
