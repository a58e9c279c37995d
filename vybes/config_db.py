import json
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from .errors import AlreadyExists, InvalidArgument, NotFound, StoreFailure, VybesError
from .logging_util import log_debug, log_error, log_summary
from .storage import CONFIG_DB, ensure_data_roots

SCHEMA_VERSION = 2
_WRITE_LOCK = threading.Lock()
_INIT_LOCK = threading.Lock()
_DB_READY = False
DB_PATH: Path = CONFIG_DB
SEED_DEFAULT_PRESET = os.getenv("VYBES_SEED_DEFAULT_PRESET", "1") == "1"
DEFAULT_PRESET_NAME = "Default"

SPEAKERS = ("left", "right", "sub")
EQ_TYPES = ("room", "pref")

# Settings seeded on first open; calibration stays absent until the device is calibrated.
DEFAULT_SETTINGS = {
    "subwoofer_state": "on",
    "bypass_state": "off",
    "mute_state": "off",
    "mute_percent": "0",
    "tone_frequency": "1000",
    "tone_volume": "50",
    "noise_volume": "0",
}

DEFAULT_PEQ_POINTS = [
    {"type": "PK", "freq": 100, "gain": 0, "q": 1.0, "enabled": True},
    {"type": "PK", "freq": 1000, "gain": 0, "q": 1.0, "enabled": True},
    {"type": "PK", "freq": 10000, "gain": 0, "q": 1.0, "enabled": True},
]

PRESET_DEFAULTS: dict[str, Any] = {
    "delay_left": 0.0,
    "delay_right": 0.0,
    "delay_sub": 0.0,
    "gain_left": 1.0,
    "gain_right": 1.0,
    "gain_sub": 1.0,
    "is_speaker_delay_enabled": 0,
    "is_crossover_enabled": 1,
    "crossover_freq": 80,
    "crossover_slope": 12,
    "is_fir_enabled": 0,
    "fir_left": "",
    "fir_right": "",
    "fir_sub": "",
    "is_preference_eq_enabled": 0,
    "is_equal_loudness_enabled": 0,
}
PRESET_FIELDS = list(PRESET_DEFAULTS)

FLAG_COLUMNS = {
    "speaker_delay": "is_speaker_delay_enabled",
    "crossover": "is_crossover_enabled",
    "fir": "is_fir_enabled",
    "preference_eq": "is_preference_eq_enabled",
    "equal_loudness": "is_equal_loudness_enabled",
}


def _now_iso() -> str:
    return datetime.utcnow().replace(microsecond=0).isoformat() + "Z"


def set_db_path(path: Path | str) -> None:
    """Point the store at another database file (tests, smoke checks)."""
    global DB_PATH, _DB_READY
    with _INIT_LOCK:
        DB_PATH = Path(path)
        _DB_READY = False


def _connect() -> sqlite3.Connection:
    ensure_data_roots(DB_PATH)
    conn = sqlite3.connect(DB_PATH, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 30000")
    return conn


def init_db() -> None:
    global _DB_READY
    if _DB_READY:
        return
    with _INIT_LOCK:
        if _DB_READY:
            return
        with _WRITE_LOCK:
            conn = _connect()
            try:
                conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA synchronous = NORMAL")
                jm = conn.execute("PRAGMA journal_mode").fetchone()
                log_debug("db", "journal_mode set", mode=str(jm[0]) if jm else "unknown", db=str(DB_PATH))
                conn.executescript(
                    """
                CREATE TABLE IF NOT EXISTS system_settings (
                    key TEXT PRIMARY KEY,
                    value TEXT
                );
                CREATE TABLE IF NOT EXISTS presets (
                    name TEXT PRIMARY KEY,
                    delay_left REAL NOT NULL DEFAULT 0,
                    delay_right REAL NOT NULL DEFAULT 0,
                    delay_sub REAL NOT NULL DEFAULT 0,
                    gain_left REAL NOT NULL DEFAULT 1.0,
                    gain_right REAL NOT NULL DEFAULT 1.0,
                    gain_sub REAL NOT NULL DEFAULT 1.0,
                    is_speaker_delay_enabled INTEGER NOT NULL DEFAULT 0,
                    is_crossover_enabled INTEGER NOT NULL DEFAULT 1,
                    crossover_freq INTEGER NOT NULL DEFAULT 80,
                    crossover_slope INTEGER NOT NULL DEFAULT 12,
                    is_fir_enabled INTEGER NOT NULL DEFAULT 0,
                    fir_left TEXT NOT NULL DEFAULT '',
                    fir_right TEXT NOT NULL DEFAULT '',
                    fir_sub TEXT NOT NULL DEFAULT '',
                    is_preference_eq_enabled INTEGER NOT NULL DEFAULT 0,
                    is_equal_loudness_enabled INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS eq_sets (
                    eq_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    preset_name TEXT NOT NULL REFERENCES presets(name) ON UPDATE CASCADE ON DELETE CASCADE,
                    type TEXT NOT NULL CHECK (type IN ('room', 'pref')),
                    spl INTEGER NOT NULL,
                    peq_json TEXT NOT NULL DEFAULT '[]',
                    updated_at TEXT NOT NULL,
                    UNIQUE (preset_name, type, spl)
                );
                CREATE TABLE IF NOT EXISTS active_preset (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    name TEXT REFERENCES presets(name) ON UPDATE CASCADE ON DELETE SET NULL
                );
                CREATE TABLE IF NOT EXISTS schema_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_eq_sets_preset ON eq_sets(preset_name, type, spl);
                """
                )
                preset_cols = {row["name"] for row in conn.execute("PRAGMA table_info(presets)").fetchall()}
                if "crossover_slope" not in preset_cols:
                    conn.execute("ALTER TABLE presets ADD COLUMN crossover_slope INTEGER NOT NULL DEFAULT 12")
                if "is_equal_loudness_enabled" not in preset_cols:
                    conn.execute("ALTER TABLE presets ADD COLUMN is_equal_loudness_enabled INTEGER NOT NULL DEFAULT 0")
                conn.execute("INSERT OR IGNORE INTO active_preset (id, name) VALUES (1, NULL)")
                conn.execute(
                    "INSERT OR REPLACE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
                    (str(SCHEMA_VERSION),),
                )
                conn.executemany(
                    "INSERT OR IGNORE INTO system_settings (key, value) VALUES (?, ?)",
                    list(DEFAULT_SETTINGS.items()),
                )
                count = conn.execute("SELECT COUNT(*) FROM presets").fetchone()[0]
                if SEED_DEFAULT_PRESET and count == 0:
                    _insert_preset(conn, DEFAULT_PRESET_NAME, None)
                    conn.execute("UPDATE active_preset SET name = ? WHERE id = 1", (DEFAULT_PRESET_NAME,))
                    log_summary("db", "seeded default preset", name=DEFAULT_PRESET_NAME)
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                log_error("db", "init_db failed", db=str(DB_PATH), err=str(exc))
                raise StoreFailure("Failed to initialise configuration store", "store_init_failed") from exc
            finally:
                conn.close()
        _DB_READY = True


@contextmanager
def _reader(op: str) -> Iterator[sqlite3.Connection]:
    init_db()
    conn = _connect()
    try:
        yield conn
    except sqlite3.Error as exc:
        log_error("db", f"{op} failed", err=str(exc))
        raise StoreFailure(f"Failed to read configuration: {exc}") from exc
    finally:
        conn.close()


@contextmanager
def _writer(op: str) -> Iterator[sqlite3.Connection]:
    """One write transaction; anything raised inside rolls the whole unit back."""
    init_db()
    with _WRITE_LOCK:
        conn = _connect()
        try:
            yield conn
            conn.commit()
        except VybesError:
            conn.rollback()
            raise
        except sqlite3.Error as exc:
            conn.rollback()
            log_error("db", f"{op} failed", err=str(exc))
            raise StoreFailure(f"Failed to {op.replace('_', ' ')}: {exc}") from exc
        finally:
            conn.close()


def _active_name(conn: sqlite3.Connection) -> str | None:
    row = conn.execute("SELECT name FROM active_preset WHERE id = 1").fetchone()
    return row["name"] if row else None


def _preset_exists(conn: sqlite3.Connection, name: str) -> bool:
    return conn.execute("SELECT 1 FROM presets WHERE name = ?", (name,)).fetchone() is not None


def _require_preset(conn: sqlite3.Connection, name: str) -> None:
    if not _preset_exists(conn, name):
        raise NotFound("Preset not found", "preset_not_found")


def _insert_preset(conn: sqlite3.Connection, name: str, fields: dict | None) -> None:
    values = dict(PRESET_DEFAULTS)
    for key, val in (fields or {}).items():
        if key not in PRESET_DEFAULTS:
            raise InvalidArgument(f"Unknown preset field: {key}", "invalid_field")
        values[key] = val
    columns = ["name", *PRESET_FIELDS, "created_at"]
    params = [name, *(values[c] for c in PRESET_FIELDS), _now_iso()]
    placeholders = ", ".join("?" for _ in columns)
    try:
        conn.execute(f"INSERT INTO presets ({', '.join(columns)}) VALUES ({placeholders})", params)
    except sqlite3.IntegrityError as exc:
        raise AlreadyExists("Preset already exists", "preset_exists") from exc
    now = _now_iso()
    peq_json = json.dumps(DEFAULT_PEQ_POINTS)
    for eq_type in EQ_TYPES:
        conn.execute(
            "INSERT INTO eq_sets (preset_name, type, spl, peq_json, updated_at) VALUES (?, ?, 0, ?, ?)",
            (name, eq_type, peq_json, now),
        )


def _eq_sets_for(conn: sqlite3.Connection, name: str, eq_type: str | None = None) -> list[sqlite3.Row]:
    if eq_type is None:
        return conn.execute(
            "SELECT type, spl, peq_json FROM eq_sets WHERE preset_name = ? ORDER BY type, spl",
            (name,),
        ).fetchall()
    return conn.execute(
        "SELECT type, spl, peq_json FROM eq_sets WHERE preset_name = ? AND type = ? ORDER BY spl",
        (name, eq_type),
    ).fetchall()


def _eq_entry(row: sqlite3.Row) -> dict:
    try:
        points = json.loads(row["peq_json"] or "[]")
    except ValueError:
        log_error("db", "corrupt peq_json", spl=row["spl"], type=row["type"])
        points = []
    return {"spl": row["spl"], "peqSet": points}


def _preset_from_row(row: sqlite3.Row, active: str | None, eq_rows: list[sqlite3.Row]) -> dict:
    room = [_eq_entry(r) for r in eq_rows if r["type"] == "room"]
    pref = [_eq_entry(r) for r in eq_rows if r["type"] == "pref"]
    return {
        "name": row["name"],
        "isCurrent": row["name"] == active,
        "isSpeakerDelayEnabled": bool(row["is_speaker_delay_enabled"]),
        "speakerDelays": {s: row[f"delay_{s}"] for s in SPEAKERS},
        "speakerGains": {s: row[f"gain_{s}"] for s in SPEAKERS},
        "isCrossoverEnabled": bool(row["is_crossover_enabled"]),
        "crossoverFreq": row["crossover_freq"],
        "crossoverSlope": row["crossover_slope"],
        "isFIREnabled": bool(row["is_fir_enabled"]),
        "firLeft": row["fir_left"],
        "firRight": row["fir_right"],
        "firSub": row["fir_sub"],
        "isPreferenceEQEnabled": bool(row["is_preference_eq_enabled"]),
        "isEqualLoudnessEnabled": bool(row["is_equal_loudness_enabled"]),
        "roomCorrection": room,
        "preferenceEQ": pref,
        "createdAt": row["created_at"],
    }


# --- settings ---

def get_setting(key: str) -> str | None:
    with _reader("get_setting") as conn:
        row = conn.execute("SELECT value FROM system_settings WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else None


def get_settings(keys: list[str]) -> dict[str, str | None]:
    with _reader("get_settings") as conn:
        rows = conn.execute("SELECT key, value FROM system_settings").fetchall()
    found = {row["key"]: row["value"] for row in rows}
    return {key: found.get(key) for key in keys}


def set_setting(key: str, value: Any) -> None:
    set_settings({key: value})


def set_settings(values: dict[str, Any]) -> None:
    with _writer("set_settings") as conn:
        conn.executemany(
            """
            INSERT INTO system_settings (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            [(key, str(val)) for key, val in values.items()],
        )
    log_debug("db", "settings written", **values)


# --- presets ---

def list_presets() -> list[dict]:
    with _reader("list_presets") as conn:
        active = _active_name(conn)
        rows = conn.execute("SELECT name FROM presets ORDER BY name").fetchall()
    return [{"name": row["name"], "isCurrent": row["name"] == active} for row in rows]


def get_active_preset() -> str | None:
    with _reader("get_active_preset") as conn:
        return _active_name(conn)


def get_preset(name: str) -> dict:
    with _reader("get_preset") as conn:
        row = conn.execute("SELECT * FROM presets WHERE name = ?", (name,)).fetchone()
        if not row:
            raise NotFound("Preset not found", "preset_not_found")
        eq_rows = _eq_sets_for(conn, name)
        active = _active_name(conn)
    return _preset_from_row(row, active, eq_rows)


def create_preset(name: str, fields: dict | None = None) -> dict:
    with _writer("create_preset") as conn:
        if _preset_exists(conn, name):
            raise AlreadyExists("Preset already exists", "preset_exists")
        _insert_preset(conn, name, fields)
        conn.execute("UPDATE active_preset SET name = ? WHERE id = 1", (name,))
    log_summary("db", "preset created", name=name)
    return get_preset(name)


def copy_preset(source: str, new_name: str) -> None:
    with _writer("copy_preset") as conn:
        src = conn.execute("SELECT * FROM presets WHERE name = ?", (source,)).fetchone()
        if not src:
            raise NotFound("Source preset not found", "source_not_found")
        if _preset_exists(conn, new_name):
            raise AlreadyExists("Preset already exists", "preset_exists")
        columns = ["name", *PRESET_FIELDS, "created_at"]
        params = [new_name, *(src[c] for c in PRESET_FIELDS), _now_iso()]
        conn.execute(
            f"INSERT INTO presets ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            params,
        )
        conn.execute(
            """
            INSERT INTO eq_sets (preset_name, type, spl, peq_json, updated_at)
            SELECT ?, type, spl, peq_json, ? FROM eq_sets WHERE preset_name = ?
            """,
            (new_name, _now_iso(), source),
        )
    log_summary("db", "preset copied", source=source, name=new_name)


def rename_preset(old: str, new: str) -> None:
    with _writer("rename_preset") as conn:
        _require_preset(conn, old)
        if old == new:
            return
        if _preset_exists(conn, new):
            raise AlreadyExists("New preset name already exists", "preset_exists")
        try:
            conn.execute("UPDATE presets SET name = ? WHERE name = ?", (new, old))
        except sqlite3.IntegrityError as exc:
            raise AlreadyExists("New preset name already exists", "preset_exists") from exc
        # No-op when the foreign keys already cascaded the rename.
        conn.execute("UPDATE eq_sets SET preset_name = ? WHERE preset_name = ?", (new, old))
        conn.execute("UPDATE active_preset SET name = ? WHERE id = 1 AND name = ?", (new, old))
    log_summary("db", "preset renamed", old=old, new=new)


def delete_preset(name: str) -> None:
    with _writer("delete_preset") as conn:
        _require_preset(conn, name)
        conn.execute("DELETE FROM eq_sets WHERE preset_name = ?", (name,))
        conn.execute("UPDATE active_preset SET name = NULL WHERE id = 1 AND name = ?", (name,))
        conn.execute("DELETE FROM presets WHERE name = ?", (name,))
    log_summary("db", "preset deleted", name=name)


def set_active_preset(name: str) -> None:
    with _writer("set_active_preset") as conn:
        _require_preset(conn, name)
        conn.execute("UPDATE active_preset SET name = ? WHERE id = 1", (name,))


# --- EQ sets ---

def list_eq_sets(preset: str, eq_type: str) -> list[dict]:
    with _reader("list_eq_sets") as conn:
        _require_preset(conn, preset)
        rows = _eq_sets_for(conn, preset, eq_type)
    return [_eq_entry(row) for row in rows]


def upsert_eq_set(preset: str, eq_type: str, spl: int, points: list[dict]) -> bool:
    """Create or wholesale-replace one EQ set. Returns True when a new row was created."""
    with _writer("upsert_eq_set") as conn:
        _require_preset(conn, preset)
        existing = conn.execute(
            "SELECT eq_id FROM eq_sets WHERE preset_name = ? AND type = ? AND spl = ?",
            (preset, eq_type, spl),
        ).fetchone()
        conn.execute(
            """
            INSERT INTO eq_sets (preset_name, type, spl, peq_json, updated_at) VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(preset_name, type, spl) DO UPDATE SET
                peq_json = excluded.peq_json,
                updated_at = excluded.updated_at
            """,
            (preset, eq_type, spl, json.dumps(points), _now_iso()),
        )
    return existing is None


def delete_eq_set(preset: str, eq_type: str, spl: int) -> None:
    with _writer("delete_eq_set") as conn:
        cur = conn.execute(
            "DELETE FROM eq_sets WHERE preset_name = ? AND type = ? AND spl = ?",
            (preset, eq_type, spl),
        )
        if cur.rowcount == 0:
            raise NotFound("EQ set not found", "eq_set_not_found")


# --- field-level setters ---

def _update_column(op: str, preset: str, column: str, value: Any) -> None:
    with _writer(op) as conn:
        cur = conn.execute(f"UPDATE presets SET {column} = ? WHERE name = ?", (value, preset))
        if cur.rowcount == 0:
            raise NotFound("Preset not found", "preset_not_found")


def _speaker_column(prefix: str, speaker: str) -> str:
    if speaker not in SPEAKERS:
        raise InvalidArgument("Speaker must be \"left\", \"right\", or \"sub\"", "invalid_speaker")
    return f"{prefix}_{speaker}"


def set_speaker_delay(preset: str, speaker: str, delay_ms: float) -> None:
    _update_column("set_speaker_delay", preset, _speaker_column("delay", speaker), float(delay_ms))


def set_speaker_gain(preset: str, speaker: str, gain: float) -> None:
    _update_column("set_speaker_gain", preset, _speaker_column("gain", speaker), float(gain))


def set_active_speaker_delay(speaker: str, delay_ms: float) -> str:
    """Set a delay on whichever preset is current; returns that preset's name."""
    column = _speaker_column("delay", speaker)
    with _writer("set_active_speaker_delay") as conn:
        name = _active_name(conn)
        if name is None:
            raise NotFound("No active preset", "no_active_preset")
        conn.execute(f"UPDATE presets SET {column} = ? WHERE name = ?", (float(delay_ms), name))
    return name


def set_crossover_freq(preset: str, frequency: int) -> None:
    _update_column("set_crossover_freq", preset, "crossover_freq", int(frequency))


def set_crossover(preset: str, frequency: int, slope: int) -> None:
    with _writer("set_crossover") as conn:
        cur = conn.execute(
            "UPDATE presets SET crossover_freq = ?, crossover_slope = ? WHERE name = ?",
            (int(frequency), int(slope), preset),
        )
        if cur.rowcount == 0:
            raise NotFound("Preset not found", "preset_not_found")


def set_fir_file(preset: str, channel: str, filename: str) -> None:
    _update_column("set_fir_file", preset, _speaker_column("fir", channel), filename)


def set_preset_flag(preset: str, flag: str, enabled: bool) -> None:
    column = FLAG_COLUMNS.get(flag)
    if not column:
        raise InvalidArgument(f"Unknown preset flag: {flag}", "invalid_flag")
    _update_column("set_preset_flag", preset, column, 1 if enabled else 0)


# --- field readers ---

def _preset_row(op: str, preset: str, columns: str) -> sqlite3.Row:
    with _reader(op) as conn:
        row = conn.execute(f"SELECT {columns} FROM presets WHERE name = ?", (preset,)).fetchone()
    if not row:
        raise NotFound("Preset not found", "preset_not_found")
    return row


def get_speaker_delays(preset: str) -> dict:
    row = _preset_row("get_speaker_delays", preset, "delay_left, delay_right, delay_sub")
    return {s: row[f"delay_{s}"] for s in SPEAKERS}


def get_speaker_gains(preset: str) -> dict:
    row = _preset_row("get_speaker_gains", preset, "gain_left, gain_right, gain_sub")
    return {s: row[f"gain_{s}"] for s in SPEAKERS}


def get_crossover(preset: str) -> dict:
    row = _preset_row("get_crossover", preset, "is_crossover_enabled, crossover_freq, crossover_slope")
    return {
        "enabled": bool(row["is_crossover_enabled"]),
        "frequency": row["crossover_freq"],
        "slope": row["crossover_slope"],
    }
