# tests/test_matcher.py
from detection.matcher import RuleIndex, detection_stats, evaluate_rule, match_all, match_event, truncate_value


def _powershell_rule(make_rule, **extra):
    return make_rule(
        "ps-4688",
        eventId=4688,
        contains=[{"field": "Image", "values": ["powershell.exe"], "operator": "any"}],
        logic="and",
        **extra,
    )


def test_single_contains_rule_matches_event(make_event, make_rule):
    rule = _powershell_rule(make_rule)
    ev = make_event(event_id=4688, fields={"Image": "C:\\Windows\\System32\\powershell.exe"})

    result = match_all([ev], [rule])

    assert list(result) == ["ps-4688"]
    assert len(result["ps-4688"]) == 1
    match = result["ps-4688"][0]
    assert match.event == ev
    assert match.matched_fields == ("EventID", "Image")
    assert [fm.field for fm in match.field_matches] == ["EventID", "Image"]


def test_garbled_payload_never_matches_predicate_rules(make_event, make_rule):
    ev = make_event(event_id=4688, raw_line="<Event><EventData><Data Name='Image'>powershell.exe")
    rules = [
        _powershell_rule(make_rule),
        make_rule("eq", equals=[{"field": "User", "value": "bob"}]),
    ]
    assert match_all([ev], rules) == {}


def test_event_id_filter(make_event, make_rule):
    rule = _powershell_rule(make_rule)
    for event_id in (1, 4624):
        ev = make_event(event_id=event_id, fields={"Image": "C:\\Windows\\System32\\powershell.exe"})
        assert evaluate_rule(ev, rule) is None


def test_missing_event_id_is_rejected_when_rule_lists_ids(make_event, make_rule):
    rule = _powershell_rule(make_rule)
    ev = make_event(event_id=None, fields={"Image": "powershell.exe"})
    assert evaluate_rule(ev, rule) is None


def test_provider_and_channel_are_substring_filters(make_event, make_rule):
    rule = make_rule("sec", provider="Sysmon", channel="Operational")
    assert evaluate_rule(make_event(), rule) is not None
    assert evaluate_rule(make_event(source="Microsoft-Windows-Security-Auditing"), rule) is None
    assert evaluate_rule(make_event(path="Security"), rule) is None

    match = evaluate_rule(make_event(), rule)
    assert match.matched_fields == ("Provider", "Channel")


def test_rule_without_predicates_matches_on_filters(make_event, make_rule):
    rule = make_rule("unload", eventId=255)
    match = evaluate_rule(make_event(event_id=255), rule)
    assert match is not None
    assert match.matched_fields == ("EventID",)


def test_contains_is_case_insensitive(make_event, make_rule):
    rule = make_rule("mimi", contains=[{"field": "CommandLine", "values": ["SEKURLSA"]}])
    ev = make_event(fields={"CommandLine": "mimikatz.exe sekurlsa::logonpasswords"})
    assert evaluate_rule(ev, rule) is not None


def test_contains_all_operator(make_event, make_rule):
    rule = make_rule("both", contains=[{"field": "CommandLine", "values": ["net", "group"], "operator": "all"}])
    assert evaluate_rule(make_event(fields={"CommandLine": "net group /domain"}), rule) is not None
    assert evaluate_rule(make_event(fields={"CommandLine": "net user"}), rule) is None


def test_empty_field_value_never_contains(make_event, make_rule):
    rule = make_rule("any", contains=[{"field": "User", "values": [""]}])
    assert evaluate_rule(make_event(fields={"User": ""}), rule) is None


def test_and_logic_requires_every_predicate(make_event, make_rule):
    rule = make_rule(
        "and",
        contains=[
            {"field": "Image", "values": ["powershell.exe"]},
            {"field": "CommandLine", "values": ["downloadstring"]},
        ],
    )
    ev = make_event(fields={"Image": "C:\\powershell.exe", "CommandLine": "powershell -nop"})
    assert evaluate_rule(ev, rule) is None


def test_or_logic_reports_only_matching_predicates(make_event, make_rule):
    rule = make_rule(
        "or",
        logic="or",
        contains=[
            {"field": "Image", "values": ["whoami.exe"]},
            {"field": "CommandLine", "values": ["ipconfig"]},
        ],
        equals=[{"field": "User", "value": "CORP\\admin"}],
    )
    ev = make_event(fields={"Image": "C:\\cmd.exe", "CommandLine": "ipconfig /all", "User": "CORP\\admin"})
    match = evaluate_rule(ev, rule)
    assert match is not None
    assert match.matched_fields == ("CommandLine", "User")


def test_equals_compares_text_across_types(make_event, make_rule):
    rule = make_rule("logon", equals=[{"field": "LogonType", "value": 3}])
    assert evaluate_rule(make_event(fields={"LogonType": "3"}), rule) is not None
    assert evaluate_rule(make_event(fields={"LogonType": "10"}), rule) is None


def test_evidence_values_are_truncated(make_event, make_rule):
    command = "powershell -enc " + "A" * 300
    rule = make_rule("long", contains=[{"field": "CommandLine", "values": ["-enc"]}])
    match = evaluate_rule(make_event(fields={"CommandLine": command}), rule)
    value = match.field_matches[0].value
    assert len(value) == 103
    assert value.endswith("...")
    assert value == truncate_value(command)
    assert truncate_value("short") == "short"


def test_adding_rules_never_removes_matches(make_event, make_rule):
    events = [
        make_event(event_id=4688, fields={"Image": "C:\\powershell.exe"}),
        make_event(event_id=1, fields={"CommandLine": "whoami /all"}),
    ]
    base = [_powershell_rule(make_rule)]
    extended = base + [make_rule("whoami", contains=[{"field": "CommandLine", "values": ["whoami"]}])]

    before = match_all(events, base)
    after = match_all(events, extended)
    for rule_id, matches in before.items():
        assert after[rule_id] == matches
    assert list(after) == ["ps-4688", "whoami"]


def test_match_all_is_deterministic_and_shard_independent(make_event, make_rule):
    rules = [
        make_rule("cmd", contains=[{"field": "Image", "values": ["cmd.exe"]}]),
        make_rule("net", eventId=3, contains=[{"field": "DestinationPort", "values": ["445"]}]),
        make_rule("any-sysmon", provider="Sysmon"),
    ]
    events = []
    for i in range(17):
        if i % 3 == 0:
            events.append(make_event(event_id=3, fields={"DestinationPort": "445"}, offset=i))
        else:
            events.append(make_event(event_id=1, fields={"Image": "C:\\Windows\\cmd.exe"}, offset=i))

    sequential = match_all(events, rules)
    assert match_all(events, rules) == sequential
    assert match_all(events, rules, batch_size=4, max_workers=3) == sequential
    assert [m.event.uid for m in sequential["any-sysmon"]] == [e.uid for e in events]


def test_match_event_keeps_rule_order(make_event, make_rule):
    rules = [make_rule("b", provider="Sysmon"), make_rule("a", eventId=1)]
    assert [m.rule.id for m in match_event(make_event(event_id=1), rules)] == ["b", "a"]


def test_rule_index_candidates(make_rule):
    rules = [make_rule("wild"), make_rule("one", eventId=1), make_rule("multi", eventId=[1, 3])]
    index = RuleIndex(rules)
    assert [r.id for r in index.candidates(1)] == ["wild", "one", "multi"]
    assert [r.id for r in index.candidates(3)] == ["wild", "multi"]
    assert [r.id for r in index.candidates(None)] == ["wild"]


def test_detection_stats(make_event, make_rule):
    rules = [
        make_rule("crit", severity="critical", eventId=1),
        make_rule("low", severity="low", eventId=1),
        make_rule("never", severity="high", eventId=99),
    ]
    result = match_all([make_event(event_id=1), make_event(event_id=1)], rules)
    stats = detection_stats(result, total_rules=len(rules))
    assert stats.total_rules == 3
    assert stats.matched_rules == 2
    assert stats.total_matches == 4
    assert stats.by_severity == {"info": 0, "low": 2, "medium": 0, "high": 0, "critical": 2}
