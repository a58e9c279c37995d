import os
import logging
import shutil
from pathlib import Path

logger = logging.getLogger("vybes.storage")

_LAST_WRITE_ERR: str | None = None


def _uid_gid() -> tuple[str, str]:
    uid = str(os.geteuid()) if hasattr(os, "geteuid") else "n/a"
    gid = str(os.getegid()) if hasattr(os, "getegid") else "n/a"
    return uid, gid


def _stat_summary(path: Path) -> str:
    try:
        st = path.stat()
    except OSError as exc:
        return f"stat_error={exc!r}"
    return f"mode={oct(st.st_mode)} uid={st.st_uid} gid={st.st_gid}"


def _can_write(root: Path) -> bool:
    global _LAST_WRITE_ERR
    test_dir = root / ".vybes_write_test"
    test_file = test_dir / "x"
    try:
        test_dir.mkdir(parents=True, exist_ok=True)
        test_file.write_text("ok", encoding="utf-8")
        return True
    except OSError as exc:
        _LAST_WRITE_ERR = f"{exc!r} errno={exc.errno}"
        logger.warning("[storage] write test failed at %s err=%r errno=%s", root, exc, exc.errno)
        return False
    finally:
        shutil.rmtree(test_dir, ignore_errors=True)


def _select_data_root() -> Path:
    env_root = os.getenv("DATA_DIR") or os.getenv("VYBES_DATA_ROOT")
    require_root = os.getenv("VYBES_REQUIRE_DATA_ROOT") == "1"
    root = Path(env_root) if env_root else Path.cwd() / "data"
    if _can_write(root):
        return root
    if require_root:
        uid, gid = _uid_gid()
        raise RuntimeError(
            "DATA_ROOT not writable: "
            f"path={root} err={_LAST_WRITE_ERR or 'unknown'} uid={uid} gid={gid} stat={_stat_summary(root)}"
        )
    fallback = Path.cwd() / "data"
    logger.warning("[storage] falling back to %s (DATA_ROOT=%s not writable)", fallback, root)
    fallback.mkdir(parents=True, exist_ok=True)
    return fallback


DATA_ROOT = _select_data_root()
_env_db = (os.getenv("VYBES_DB") or "").strip()
if _env_db:
    CONFIG_DB = Path(_env_db)
    if not CONFIG_DB.is_absolute():
        CONFIG_DB = DATA_ROOT / CONFIG_DB
else:
    CONFIG_DB = DATA_ROOT / "vybes.sqlite3"
_env_fir = (os.getenv("VYBES_FIR_DIR") or "").strip()
FIR_DIR = Path(_env_fir) if _env_fir else DATA_ROOT / "fir"


def ensure_data_roots(db_path: Path | None = None) -> None:
    target = (db_path or CONFIG_DB).parent
    try:
        target.mkdir(parents=True, exist_ok=True)
    except PermissionError as exc:
        uid, gid = _uid_gid()
        logger.warning(
            "[storage] Permission denied creating %s (DATA_ROOT=%s uid=%s gid=%s err=%r)",
            target,
            DATA_ROOT,
            uid,
            gid,
            exc,
        )
        raise RuntimeError(f"DATA_ROOT not writable: path={target} stat={_stat_summary(DATA_ROOT)}") from exc


def describe_db_location(db_path: Path | None = None) -> dict:
    path = db_path or CONFIG_DB
    return {
        "env_db": _env_db or "",
        "db": str(path),
        "db_under_data": str(path).startswith(str(DATA_ROOT)),
        "exists": path.exists(),
    }


FIR_EXTS = {".txt", ".fir", ".csv", ".wav"}


def list_fir_files(fir_dir: Path | None = None) -> list[str] | None:
    """Filter files found in the FIR directory, or None when it does not exist."""
    root = fir_dir or FIR_DIR
    if not root.is_dir():
        return None
    try:
        return sorted(p.name for p in root.iterdir() if p.is_file() and p.suffix.lower() in FIR_EXTS)
    except OSError as exc:
        logger.warning("[storage] cannot list FIR dir %s err=%r", root, exc)
        return None
