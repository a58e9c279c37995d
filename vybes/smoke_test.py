from __future__ import annotations

import tempfile
from pathlib import Path

from vybes import config_db
from vybes.errors import NotFound


def smoke_test_config_db() -> tuple[bool, list[str]]:
    issues: list[str] = []
    previous = config_db.DB_PATH
    with tempfile.TemporaryDirectory() as tmpdir:
        config_db.set_db_path(Path(tmpdir) / "vybes.sqlite3")
        try:
            config_db.init_db()
            if not config_db.DB_PATH.exists():
                issues.append(f"config db missing: {config_db.DB_PATH}")
            preset = config_db.create_preset("Smoke")
            if len(preset.get("roomCorrection", [])) != 1 or len(preset.get("preferenceEQ", [])) != 1:
                issues.append("default EQ sets missing after create")
            if config_db.get_active_preset() != "Smoke":
                issues.append("created preset is not active")
            config_db.copy_preset("Smoke", "Smoke Copy")
            config_db.rename_preset("Smoke Copy", "Smoke Renamed")
            created = config_db.upsert_eq_set("Smoke Renamed", "room", 85, config_db.DEFAULT_PEQ_POINTS[:1])
            if not created:
                issues.append("eq upsert did not create a row")
            current = [p for p in config_db.list_presets() if p["isCurrent"]]
            if len(current) != 1:
                issues.append(f"expected one current preset, found {len(current)}")
            config_db.delete_preset("Smoke Renamed")
            try:
                config_db.list_eq_sets("Smoke Renamed", "room")
                issues.append("eq sets still reachable after delete")
            except NotFound:
                pass
            config_db.set_setting("calibration_spl", "85")
            if config_db.get_setting("calibration_spl") != "85":
                issues.append("setting round trip failed")
        finally:
            config_db.set_db_path(previous)
    return (len(issues) == 0, issues)


def main() -> int:
    ok, issues = smoke_test_config_db()
    if ok:
        print("config store smoke test: OK")
        return 0
    print("config store smoke test: FAIL")
    for issue in issues:
        print(f"- {issue}")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
