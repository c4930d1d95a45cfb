# tests/test_storyline.py
from analysis.storyline import build_storyline, describe_event
from datamodels.results import CorrelatedChain, SigmaMatch
from datamodels.rules import Severity


def _chain(events, matches):
    return CorrelatedChain(
        id="chain-0", events=tuple(events), severity=Severity.HIGH, score=0, duration_ms=0,
        start_time=None, end_time=None, summary="", involved_hosts=(), involved_processes=(),
        sigma_matches=tuple(matches),
    )


def test_process_creation_narrative(make_event):
    ev = make_event(event_id=1, fields={
        "Image": "C:\\Windows\\powershell.exe",
        "ParentImage": "C:\\Windows\\System32\\cmd.exe",
        "CommandLine": "powershell -nop -c whoami",
        "User": "CORP\\alice",
    })
    text = describe_event(ev)
    assert text["summary"] == "powershell.exe executed by cmd.exe [alice]"
    assert text["detail"] == "powershell -nop -c whoami"


def test_network_narrative_and_system_user_hidden(make_event):
    ev = make_event(event_id=3, fields={
        "Image": "C:\\x\\beacon.exe",
        "DestinationIp": "10.1.2.3",
        "DestinationPort": "443",
        "User": "NT AUTHORITY\\SYSTEM",
    })
    assert describe_event(ev) == {"summary": "beacon.exe connected to network", "detail": "10.1.2.3:443"}


def test_registry_and_unknown_events(make_event):
    reg = make_event(event_id=13, fields={
        "Image": "C:\\reg.exe",
        "TargetObject": "HKLM\\Software\\Microsoft\\Windows\\CurrentVersion\\Run\\Updater",
    })
    assert describe_event(reg) == {"summary": "reg.exe modified registry", "detail": "Updater"}
    assert describe_event(make_event(event_id=999))["summary"] == "Event 999"


def test_long_command_line_is_shortened(make_event):
    ev = make_event(event_id=1, fields={"Image": "C:\\a.exe", "CommandLine": "a.exe " + "x" * 200})
    detail = describe_event(ev)["detail"]
    assert len(detail) == 83
    assert detail.endswith("...")


def test_storyline_centres_on_detections(make_event, make_rule):
    rule = make_rule("dump", title="Credential Dump")
    events = [make_event(event_id=11, offset=i, fields={"TargetFilename": f"C:\\f{i}.txt"}) for i in range(6)]
    match = SigmaMatch(rule=rule, event=events[3], matched_fields=(), field_matches=())

    steps = build_storyline(_chain(events, [match]))

    assert len(steps) == 3
    assert [s.summary for s in steps] == ["Created f2.txt", "Created f3.txt", "Created f4.txt"]
    assert [s.has_match for s in steps] == [False, True, False]
    assert steps[1].matched_rules == ("Credential Dump",)
    assert steps[1].time == events[3].timestamp


def test_storyline_without_detections_is_capped(make_event):
    events = [make_event(event_id=23, offset=i, fields={"TargetFilename": f"C:\\d{i}"}) for i in range(15)]
    steps = build_storyline(_chain(events, []), max_steps=4)
    assert [s.summary for s in steps] == ["Deleted d0", "Deleted d1", "Deleted d2", "Deleted d3"]
