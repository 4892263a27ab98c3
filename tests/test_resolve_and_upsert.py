import json
import sys
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "API"))

import zeronorth  # noqa: E402


def _item(item_id, name, **data):
    return {"id": item_id, "data": {"name": name, **data}}


def _no_sleep(_seconds):
    return None


# --- find_by_name ----------------------------------------------------------------------


def test_find_by_name_matches_exactly_ignoring_case(client, fake_api):
    fake_api.add("GET", "targets", fake_api.listing([_item("t1", "foo-bar"), _item("t2", "Foo")]))

    assert zeronorth.find_by_name(client, "targets", "foo") == "t2"
    assert fake_api.calls[0].query == {"name": "foo"}


def test_find_by_name_returns_none_when_only_substrings_match(client, fake_api):
    fake_api.add("GET", "policies", fake_api.listing([_item("p1", "Nightly scan (old)")]))
    assert zeronorth.find_by_name(client, "policies", "Nightly scan") is None


def test_find_by_name_reports_every_ambiguous_id(client, fake_api):
    fake_api.add(
        "GET",
        "targets",
        fake_api.listing([_item("t1", "Foo"), _item("t2", "foo-bar"), _item("t3", "FOO")]),
    )

    with pytest.raises(zeronorth.AmbiguousNameError) as exc_info:
        zeronorth.find_by_name(client, "targets", "Foo")
    assert exc_info.value.ids == ["t1", "t3"]


def test_find_by_name_empty_response_is_an_error(client, fake_api):
    fake_api.add("GET", "targets", "")
    with pytest.raises(zeronorth.EmptyResponseError):
        zeronorth.find_by_name(client, "targets", "anything")


def test_find_by_name_rejects_bad_input(client):
    with pytest.raises(zeronorth.ValidationError):
        zeronorth.find_by_name(client, "targets", "  ")
    with pytest.raises(zeronorth.ValidationError):
        zeronorth.find_by_name(client, "widgets", "x")


def test_find_by_name_filters_users_by_email_client_side(client, fake_api):
    fake_api.add(
        "GET",
        "users",
        fake_api.listing(
            [
                {"id": "u1", "data": {"name": "Ann", "email": "ann@example.test"}},
                {"id": "u2", "data": {"name": "Bob", "email": "Bob@Example.test"}},
            ]
        ),
    )

    assert zeronorth.find_by_name(client, "users", "bob@example.test") == "u2"
    assert fake_api.calls[0].query == {"limit": "10000"}


def test_find_by_name_encodes_names_with_reserved_characters(client, fake_api):
    name = "team: api/v2 scan"
    fake_api.add("GET", "targets", fake_api.listing([_item("t7", name)]))

    assert zeronorth.find_by_name(client, "targets", name) == "t7"
    assert fake_api.calls[0].raw_query == "name=team%3A%20api%2Fv2%20scan"


# --- resolve_reference ---------------------------------------------------------------


def test_resolve_reference_prefers_id(client, fake_api):
    fake_api.add("GET", "targets/t1", {"id": "t1", "data": {"name": "web"}})

    assert zeronorth.resolve_reference(client, "targets", "t1") == ("t1", {"name": "web"})
    assert len(fake_api.calls) == 1


def test_resolve_reference_falls_back_to_name(client, fake_api):
    fake_api.add("GET", "targets/web-app", {"statusCode": 404, "message": "Target not found"})
    fake_api.add("GET", "targets", fake_api.listing([_item("t9", "web-app")]))
    fake_api.add("GET", "targets/t9", {"id": "t9", "data": {"name": "web-app", "tags": ["x"]}})

    target_id, data = zeronorth.resolve_reference(client, "targets", "web-app")
    assert target_id == "t9"
    assert data["tags"] == ["x"]


def test_resolve_reference_not_found(client, fake_api):
    fake_api.add("GET", "targets/ghost", {"statusCode": 404, "message": "Target not found"})
    fake_api.add("GET", "targets", fake_api.listing([]))

    with pytest.raises(zeronorth.NotFoundError):
        zeronorth.resolve_reference(client, "targets", "ghost")


# --- ensure_resource ---------------------------------------------------------------------


def test_target_payload_survives_json_with_name_and_tags():
    name = "team: api/v2 scan"
    payload = zeronorth.target_payload(name, "int1", "artifact", tags=["prod", "team:api", "a b"])

    decoded = json.loads(json.dumps(payload))

    assert decoded["name"] == name
    assert set(decoded["tags"]) == {"prod", "team:api", "a b"}


def test_ensure_resource_creates_once_then_finds(client, fake_api):
    name = "team: api/v2 scan"
    payload = zeronorth.target_payload(name, "int1", "artifact")
    fake_api.add("GET", "targets", fake_api.listing([]), fake_api.listing([_item("t1", name)]))
    fake_api.add("POST", "targets", {"id": "t1", "data": {"name": name}})

    first = zeronorth.ensure_resource(client, "targets", name, payload)
    second = zeronorth.ensure_resource(client, "targets", name, payload)

    assert first == zeronorth.UpsertResult("t1", True)
    assert second == zeronorth.UpsertResult("t1", False)
    posts = fake_api.calls_to("POST", "targets")
    assert len(posts) == 1
    assert posts[0].json["name"] == name


def test_ensure_resource_never_creates_on_ambiguity(client, fake_api):
    fake_api.add("GET", "targets", fake_api.listing([_item("t1", "dup"), _item("t2", "DUP")]))

    with pytest.raises(zeronorth.AmbiguousNameError):
        zeronorth.ensure_resource(client, "targets", "dup", {"name": "dup"})
    assert fake_api.calls_to("POST", "targets") == []


def test_ensure_resource_create_failures(client, fake_api):
    fake_api.add("GET", "targets", fake_api.listing([]))
    fake_api.add("POST", "targets", {"statusCode": 400, "message": "environmentId is required"})

    with pytest.raises(zeronorth.CreateFailedError) as exc_info:
        zeronorth.ensure_resource(client, "targets", "new", {"name": "new"})
    assert isinstance(exc_info.value.__cause__, zeronorth.ApiError)
    assert "environmentId is required" in str(exc_info.value)

    fake_api.routes[("POST", "targets")] = [{"id": None}]
    with pytest.raises(zeronorth.CreateFailedError):
        zeronorth.ensure_resource(client, "targets", "new", {"name": "new"})


def test_ensure_resource_find_twice_waits_for_agreement(client, fake_api):
    found = fake_api.listing([_item("t1", "shared")])
    fake_api.add("GET", "targets", fake_api.listing([]), found, found, found)
    sleeps = []

    result = zeronorth.ensure_resource(
        client, "targets", "shared", {"name": "shared"}, find_twice=True, sleep=sleeps.append
    )

    assert result == zeronorth.UpsertResult("t1", False)
    assert len(sleeps) == 2
    assert all(0 <= s <= 4.0 for s in sleeps)
    assert fake_api.calls_to("POST", "targets") == []


def test_find_by_name_twice_gives_up_after_max_rounds(client, fake_api):
    empty = fake_api.listing([])
    found = fake_api.listing([_item("t1", "flappy")])
    fake_api.add("GET", "targets", empty, found, empty, found)

    with pytest.raises(zeronorth.ZeroNorthError, match="did not agree"):
        zeronorth.find_by_name_twice(client, "targets", "flappy", max_rounds=2, sleep=_no_sleep)


# --- composite upserts ---------------------------------------------------------------------


def test_ensure_upload_policy_creates_target_then_policy(client, fake_api):
    fake_api.add("GET", "environments/int1", {"id": "int1", "data": {"type": "direct"}})
    fake_api.add("GET", "targets", fake_api.listing([]))
    fake_api.add("POST", "targets", {"id": "t1"})
    fake_api.add("GET", "policies", fake_api.listing([]))
    fake_api.add("POST", "policies", {"id": "p1"})

    result = zeronorth.ensure_upload_policy(client, "Upload policy", "s1", "int1", "My target", sleep=_no_sleep)

    assert result.integration_type == "direct"
    assert result.target == zeronorth.UpsertResult("t1", True)
    assert result.policy == zeronorth.UpsertResult("p1", True)

    target_body = fake_api.calls_to("POST", "targets")[0].json
    assert target_body == {
        "name": "My target",
        "environmentId": "int1",
        "environmentType": "direct",
        "parameters": {"hostname": "dummy"},
    }
    policy_body = fake_api.calls_to("POST", "policies")[0].json
    assert policy_body["targets"] == [{"id": "t1"}]
    assert policy_body["scenarioIds"] == ["s1"]
    assert policy_body["policyType"] == "manualUpload"
    assert policy_body["policySite"] == "manual"


def test_ensure_upload_policy_reuses_existing_resources(client, fake_api):
    fake_api.add("GET", "environments/int1", {"id": "int1", "data": {"type": "artifact"}})
    fake_api.add("GET", "targets", fake_api.listing([_item("t1", "My target")]))
    fake_api.add("GET", "policies", fake_api.listing([_item("p1", "Upload policy")]))

    result = zeronorth.ensure_upload_policy(client, "Upload policy", "s1", "int1", "My target", sleep=_no_sleep)

    assert (result.target.created, result.policy.created) == (False, False)
    assert result.policy.id == "p1"
    assert not [c for c in fake_api.calls if c.method == "POST"]


def test_ensure_application_target_requires_existing_target(client, fake_api):
    fake_api.add("GET", "targets", fake_api.listing([]))
    with pytest.raises(zeronorth.NotFoundError):
        zeronorth.ensure_application_target(client, "App", "missing")


def test_ensure_application_target_creates_application(client, fake_api):
    fake_api.add("GET", "targets", fake_api.listing([_item("t1", "svc")]))
    fake_api.add("GET", "applications", fake_api.listing([]))
    fake_api.add("POST", "applications", {"id": "a1"})

    assert zeronorth.ensure_application_target(client, "App", "svc") == zeronorth.UpsertResult("a1", True)
    assert fake_api.calls_to("POST", "applications")[0].json == {
        "name": "App",
        "targetIds": ["t1"],
        "description": "",
    }


def test_ensure_application_target_appends_and_keeps_risk_fields(client, fake_api):
    fake_api.add("GET", "targets", fake_api.listing([_item("t1", "svc")]))
    fake_api.add("GET", "applications", fake_api.listing([_item("a1", "App")]))
    fake_api.add(
        "GET",
        "applications/a1",
        {
            "id": "a1",
            "data": {
                "name": "App",
                "description": "payments",
                "targetIds": ["t0"],
                "typeOfRiskEstimate": "technical",
                "technicalImpact": {"confidentiality": 3},
            },
        },
    )
    fake_api.add("PUT", "applications/a1", "")

    result = zeronorth.ensure_application_target(client, "App", "svc")

    assert result == zeronorth.UpsertResult("a1", False)
    body = fake_api.calls_to("PUT", "applications/a1")[0].json
    assert body == {
        "name": "App",
        "description": "payments",
        "targetIds": ["t0", "t1"],
        "typeOfRiskEstimate": "technical",
        "technicalImpact": {"confidentiality": 3},
    }


def test_ensure_application_target_is_a_noop_for_members(client, fake_api):
    fake_api.add("GET", "targets", fake_api.listing([_item("t1", "svc")]))
    fake_api.add("GET", "applications", fake_api.listing([_item("a1", "App")]))
    fake_api.add("GET", "applications/a1", {"id": "a1", "data": {"name": "App", "targetIds": ["t1"]}})

    zeronorth.ensure_application_target(client, "App", "svc")
    assert fake_api.calls_to("PUT", "applications/a1") == []


# --- updates -------------------------------------------------------------------------------


def test_rename_target_normalizes_legacy_fields(client, fake_api):
    fake_api.add(
        "GET",
        "targets/t1",
        {
            "id": "t1",
            "data": {
                "name": "old",
                "includeRegex": None,
                "excludeRegex": ["^tmp"],
                "notifications": {},
                "tags": ["a"],
            },
        },
    )
    fake_api.add("PUT", "targets/t1", "")

    assert zeronorth.rename_resource(client, "targets", "t1", "new") == "t1"
    body = fake_api.calls_to("PUT", "targets/t1")[0].json
    assert body == {
        "name": "new",
        "includeRegex": [],
        "excludeRegex": ["^tmp"],
        "notifications": [],
        "tags": ["a"],
    }


def test_rename_policy_sends_the_updatable_fields(client, fake_api):
    fake_api.add(
        "GET",
        "policies/p1",
        {
            "id": "p1",
            "data": {
                "name": "old",
                "description": "d",
                "environmentId": "e1",
                "environmentType": "direct",
                "targets": [{"id": "t1", "name": "svc"}],
                "scenarioIds": ["s1"],
                "policyType": "manualUpload",
                "policySite": "manual",
                "permanentRunOptions": None,
                "scenarios": [{"id": "s1"}],
            },
        },
    )
    fake_api.add("PUT", "policies/p1", {"id": "p1"})

    zeronorth.rename_resource(client, "policies", "p1", "new")

    body = fake_api.calls_to("PUT", "policies/p1")[0].json
    assert body == {
        "name": "new",
        "description": "d",
        "environmentId": "e1",
        "environmentType": "direct",
        "targets": [{"id": "t1"}],
        "scenarioIds": ["s1"],
        "scenarioParameters": [],
        "policyType": "manualUpload",
        "policySite": "manual",
        "permanentRunOptions": {},
    }


def test_rename_resource_rejects_unsupported_types(client):
    with pytest.raises(zeronorth.ValidationError):
        zeronorth.rename_resource(client, "users", "u1", "x")


def test_parse_tags():
    assert zeronorth.parse_tags("a, b ,c,,a") == ["a", "b", "c"]
    assert zeronorth.parse_tags(["x,y", "z"]) == ["x", "y", "z"]
    assert zeronorth.parse_tags(None) == []


def test_apply_tag_change_modes():
    assert zeronorth.apply_tag_change(["b", "a"], "add", ["c", "a"]) == ["a", "b", "c"]
    assert zeronorth.apply_tag_change(["b", "a"], "update", ["z"]) == ["z"]
    assert zeronorth.apply_tag_change(["b", "a"], "delete", ["a"]) == ["b"]
    assert zeronorth.apply_tag_change(["b", "a"], "delete", ["ALL"]) is None


def test_apply_target_tags_list_and_add(client, fake_api):
    fake_api.add("GET", "targets/t1", {"id": "t1", "data": {"name": "svc", "tags": ["b"]}})
    fake_api.add("PUT", "targets/t1", "")

    assert zeronorth.apply_target_tags(client, "t1", "list") == ["b"]
    assert fake_api.calls_to("PUT", "targets/t1") == []

    assert zeronorth.apply_target_tags(client, "t1", "ADD", "c, a") == ["a", "b", "c"]
    assert fake_api.calls_to("PUT", "targets/t1")[0].json["tags"] == ["a", "b", "c"]


def test_apply_target_tags_delete_all_clears_tags(client, fake_api):
    fake_api.add("GET", "targets/t1", {"id": "t1", "data": {"name": "svc", "tags": ["b"]}})
    fake_api.add("PUT", "targets/t1", "")

    assert zeronorth.apply_target_tags(client, "t1", "delete", ["ALL"]) == []
    assert fake_api.calls_to("PUT", "targets/t1")[0].json["tags"] is None


def test_apply_target_tags_validates_mode_and_tags(client, fake_api):
    with pytest.raises(zeronorth.ValidationError):
        zeronorth.apply_target_tags(client, "t1", "merge", ["a"])

    fake_api.add("GET", "targets/t1", {"id": "t1", "data": {"name": "svc"}})
    with pytest.raises(zeronorth.ValidationError):
        zeronorth.apply_target_tags(client, "t1", "add", [])
