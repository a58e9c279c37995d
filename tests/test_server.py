from vybes.server import SAMPLE_FIR_FILES

PEQ = [
    {"type": "PK", "frequency": 63, "gain": -4.5, "q": 2.0},
    {"type": "HS", "freq": 8000, "gain": 1.5, "Q": 0.7, "enabled": False},
]


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["db"]["exists"] is True


def test_unknown_endpoint_is_json_404(client):
    resp = client.get("/no/such/route")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Endpoint not found", "detail": "not_found"}


def test_status_defaults(client):
    resp = client.get("/status")
    assert resp.status_code == 200
    assert resp.json() == {
        "calibration": {"isCalibrated": False, "spl": None},
        "subwoofer": "on",
        "bypass": "off",
        "mute": {"state": "off", "percent": 0},
        "tone": {"frequency": 1000, "volume": 50},
        "noise": {"volume": 0},
        "currentPreset": "Default",
    }


def test_calibration_round_trip(client):
    assert client.get("/calibration").json() == {"isCalibrated": False, "spl": None}
    resp = client.put("/calibrate/85")
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "spl": 85}
    assert client.get("/calibration").json() == {"isCalibrated": True, "spl": 85}


def test_calibration_out_of_range_keeps_previous(client):
    client.put("/calibrate/85")
    for bad in ("39", "121", "loud"):
        resp = client.put(f"/calibrate/{bad}")
        assert resp.status_code == 400
        assert "error" in resp.json()
    assert client.get("/calibration").json()["spl"] == 85


def test_system_toggles_reflected_in_status(client):
    assert client.put("/sub/off").json() == {"success": True, "state": "off"}
    assert client.put("/bypass/ON").json()["state"] == "on"
    assert client.put("/mute/on").status_code == 200
    assert client.put("/mute/percent/40").json() == {"success": True, "percent": 40}
    assert client.put("/generate/tone/440/30").json() == {"success": True, "frequency": 440, "volume": 30}
    assert client.put("/generate/noise/0").json()["volume"] == 0
    status = client.get("/status").json()
    assert status["subwoofer"] == "off"
    assert status["bypass"] == "on"
    assert status["mute"] == {"state": "on", "percent": 40}
    assert status["tone"] == {"frequency": 440, "volume": 30}


def test_system_controls_reject_bad_values(client):
    assert client.put("/sub/maybe").json()["detail"] == "invalid_state"
    assert client.put("/mute/percent/0").status_code == 400
    assert client.put("/generate/tone/5/30").status_code == 400
    assert client.put("/generate/tone/440/0").status_code == 400
    assert client.put("/generate/noise/101").status_code == 400


def test_tone_stop_and_pulse(client):
    assert client.put("/generate/tone/stop").json()["success"] is True
    assert client.put("/pulse").json()["success"] is True


def test_fir_files_falls_back_to_samples(client):
    assert client.get("/fir/files").json() == SAMPLE_FIR_FILES


def test_create_preset_returns_full_preset(client):
    resp = client.post("/preset/create/Living%20Room")
    assert resp.status_code == 201
    body = resp.json()
    assert body["name"] == "Living Room"
    assert body["isCurrent"] is True
    assert [s["spl"] for s in body["roomCorrection"]] == [0]
    assert client.get("/status").json()["currentPreset"] == "Living Room"


def test_create_existing_preset_is_400(client):
    resp = client.post("/preset/create/Default")
    assert resp.status_code == 400
    assert resp.json()["detail"] == "preset_exists"


def test_missing_preset_is_404(client):
    for resp in (
        client.get("/preset/nope"),
        client.delete("/preset/nope"),
        client.put("/preset/active/nope"),
        client.get("/preset/nope/crossover"),
        client.put("/preset/nope/gain/left/1.0"),
        client.get("/preset/nope/eq/room"),
    ):
        assert resp.status_code == 404
        assert set(resp.json()) == {"error", "detail"}


def test_copy_rename_delete_flow(client):
    assert client.post("/preset/copy/Default/Night").json() == {"success": True, "name": "Night"}
    presets = {p["name"]: p["isCurrent"] for p in client.get("/presets").json()}
    assert presets == {"Default": True, "Night": False}

    assert client.post("/preset/copy/ghost/X").json()["detail"] == "source_not_found"
    assert client.post("/preset/copy/Default/Night").status_code == 400

    assert client.put("/preset/rename/Night/Late").json() == {"success": True, "name": "Late"}
    assert client.get("/preset/Night").status_code == 404
    assert client.put("/preset/rename/Late/Default").status_code == 400

    assert client.put("/preset/active/Late").json()["activePreset"] == "Late"
    assert client.delete("/preset/Late").status_code == 200
    assert all(not p["isCurrent"] for p in client.get("/presets").json())
    assert client.get("/status").json()["currentPreset"] is None


def test_delays_and_gains(client):
    resp = client.put("/preset/Default/delay/sub/12.5")
    assert resp.json() == {"success": True, "preset": "Default", "speaker": "sub", "delayMs": 12.5}
    assert client.put("/preset/Default/delay/enabled/on").json()["state"] == "on"
    assert client.get("/preset/Default/delays").json() == {"left": 0.0, "right": 0.0, "sub": 12.5}
    assert client.put("/preset/Default/gain/left/0.5").status_code == 200
    assert client.get("/preset/Default/gains").json()["left"] == 0.5
    assert client.put("/preset/Default/gain/left/2.5").status_code == 400
    assert client.put("/preset/Default/gain/center/1.0").json()["detail"] == "invalid_speaker"
    preset = client.get("/preset/Default").json()
    assert preset["isSpeakerDelayEnabled"] is True
    assert preset["speakerGains"]["left"] == 0.5


def test_crossover_out_of_range_is_rejected(client):
    resp = client.put("/preset/Default/crossover/freq/10")
    assert resp.status_code == 400
    assert resp.json()["detail"] == "frequency_out_of_range"
    assert client.get("/preset/Default/crossover").json() == {"enabled": True, "frequency": 80, "slope": 12}


def test_crossover_updates(client):
    assert client.put("/preset/Default/crossover/freq/120").json() == {"success": True, "frequency": 120}
    assert client.put("/preset/Default/crossover/enabled/off").status_code == 200
    assert client.get("/preset/Default/crossover").json() == {"enabled": False, "frequency": 120, "slope": 12}


def test_fir_settings(client):
    assert client.put("/preset/Default/fir/file/left/fir_room1.txt").json()["filter"] == "fir_room1.txt"
    assert client.put("/preset/Default/fir/enabled/on").status_code == 200
    preset = client.get("/preset/Default").json()
    assert preset["firLeft"] == "fir_room1.txt"
    assert preset["isFIREnabled"] is True


def test_eq_upsert_create_then_replace(client):
    resp = client.post("/preset/Default/eq/room/85", json=PEQ)
    assert resp.status_code == 200
    assert resp.json()["created"] is True
    sets = {s["spl"]: s["peqSet"] for s in client.get("/preset/Default/eq/room").json()}
    assert sets[85] == [
        {"type": "PK", "freq": 63, "gain": -4.5, "q": 2.0, "enabled": True},
        {"type": "HS", "freq": 8000, "gain": 1.5, "q": 0.7, "enabled": False},
    ]

    resp = client.put("/preset/Default/eq/room/85", json={"peqPoints": PEQ[:1]})
    assert resp.json()["created"] is False
    sets = {s["spl"]: s["peqSet"] for s in client.get("/preset/Default/eq/room").json()}
    assert len(sets[85]) == 1


def test_eq_batch_with_bad_point_persists_nothing(client):
    bad = [PEQ[0], {"freq": 200, "q": 1.0}]
    resp = client.post("/preset/Default/eq/room/85", json=bad)
    assert resp.status_code == 400
    assert resp.json()["error"] == "PEQ point 1 must have frequency, gain, and q properties"
    assert [s["spl"] for s in client.get("/preset/Default/eq/room").json()] == [0]


def test_eq_rejects_bad_path_values(client):
    assert client.post("/preset/Default/eq/tilt/85", json=PEQ).json()["detail"] == "invalid_eq_type"
    assert client.post("/preset/Default/eq/room/121", json=PEQ).status_code == 400
    assert client.post("/preset/Default/eq/room/85").status_code == 400
    assert client.post("/preset/ghost/eq/room/85", json=PEQ).status_code == 404


def test_eq_delete(client):
    client.post("/preset/Default/eq/pref/70", json=PEQ)
    assert client.delete("/preset/Default/eq/pref/70").status_code == 200
    assert client.delete("/preset/Default/eq/pref/70").json()["detail"] == "eq_set_not_found"


def test_preference_eq_toggle(client):
    assert client.put("/preset/Default/eq/pref/enabled/on").json()["state"] == "on"
    assert client.get("/preset/Default").json()["isPreferenceEQEnabled"] is True
    assert client.put("/preset/Default/eq/room/enabled/on").status_code == 400


def test_live_updates_receives_change_events(client):
    with client.websocket_connect("/live-updates") as ws:
        client.put("/sub/off")
        event = ws.receive_json()
        assert event["event"] == "subwoofer"
        assert event["state"] == "off"
        assert "ts" in event

        client.post("/preset/Default/eq/room/90", json=PEQ)
        event = ws.receive_json()
        assert event["event"] == "eq_created"
        assert event["spl"] == 90
        assert len(event["peqPoints"]) == 2


def test_rejected_request_publishes_nothing(client):
    with client.websocket_connect("/live-updates") as ws:
        assert client.put("/preset/Default/crossover/freq/10").status_code == 400
        client.put("/bypass/on")
        event = ws.receive_json()
        assert event["event"] == "bypass"


def test_eq_delete_rejects_out_of_range_spl(client):
    for spl in ("500", "-1", "99999999999999999999"):
        resp = client.delete(f"/preset/Default/eq/room/{spl}")
        assert resp.status_code == 400
        assert resp.json()["detail"] == "spl_out_of_range"


def test_eq_upsert_rejects_oversized_number_in_point(client):
    huge = int("1" + "0" * 400)
    resp = client.post("/preset/Default/eq/room/85", json=[{"freq": huge, "gain": 0, "q": 1}])
    assert resp.status_code == 400
    assert resp.json()["error"] == "PEQ point 0 must have frequency, gain, and q properties"


def test_crossover_with_slope(client):
    resp = client.put("/preset/Default/crossover/100/24")
    assert resp.json() == {"success": True, "preset": "Default", "frequency": 100, "slope": 24}
    assert client.get("/preset/Default/crossover").json() == {"enabled": True, "frequency": 100, "slope": 24}
    assert client.put("/preset/Default/crossover/100/18").json()["detail"] == "invalid_slope"
    assert client.put("/preset/Default/crossover/10/12").json()["detail"] == "frequency_out_of_range"
    assert client.put("/preset/ghost/crossover/100/12").status_code == 404
    assert client.get("/preset/Default/crossover").json()["slope"] == 24


def test_crossover_literal_routes_still_win(client):
    assert client.put("/preset/Default/crossover/freq/150").json() == {"success": True, "frequency": 150}
    assert client.put("/preset/Default/crossover/enabled/off").json()["state"] == "off"
    assert client.get("/preset/Default/crossover").json() == {"enabled": False, "frequency": 150, "slope": 12}


def test_equal_loudness(client):
    assert client.put("/preset/Default/equal-loudness/on").json() == {
        "success": True,
        "preset": "Default",
        "state": "on",
    }
    assert client.get("/preset/Default").json()["isEqualLoudnessEnabled"] is True
    assert client.put("/preset/Default/equal-loudness/loud").status_code == 400
    assert client.put("/preset/ghost/equal-loudness/on").status_code == 404


def test_active_preset_delay_shortcut(client):
    client.post("/preset/create/Cinema")
    resp = client.put("/preset/delay/sub/3.25")
    assert resp.json() == {"success": True, "preset": "Cinema", "speaker": "sub", "delayMs": 3.25}
    assert client.get("/preset/Cinema/delays").json()["sub"] == 3.25
    assert client.get("/preset/Default/delays").json()["sub"] == 0.0
    assert client.put("/preset/delay/center/1").json()["detail"] == "invalid_speaker"
    assert client.put("/preset/delay/left/101").status_code == 400


def test_active_preset_delay_without_current_preset(client):
    client.delete("/preset/Default")
    resp = client.put("/preset/delay/left/1")
    assert resp.status_code == 404
    assert resp.json()["detail"] == "no_active_preset"


def test_store_failure_maps_to_500_without_partial_state(failing_eq_insert, client):
    resp = client.post("/preset/create/Half")
    assert resp.status_code == 500
    assert resp.json()["detail"] == "store_failure"
    failing_eq_insert.undo()
    assert client.get("/preset/Half").status_code == 404
    assert client.get("/status").json()["currentPreset"] == "Default"


def test_live_updates_ignores_inbound_frames(client):
    with client.websocket_connect("/live-updates") as ws:
        ws.send_bytes(b"\x00\x01")
        ws.send_text("ping")
        client.put("/preset/Default/equal-loudness/on")
        event = ws.receive_json()
        assert event["event"] == "equal_loudness"
        assert event["preset"] == "Default"


def test_crossover_slope_event(client):
    with client.websocket_connect("/live-updates") as ws:
        client.put("/preset/Default/crossover/90/24")
        event = ws.receive_json()
        assert (event["event"], event["frequency"], event["slope"]) == ("crossover", 90, 24)
