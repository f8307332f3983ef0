import json

import pytest

from ratio_engine.errors import RatioConfigValidationError
from ratio_engine.group_resolver import (
    USER_GROUP_DESCRIPTION,
    group_in_usable_groups,
    parse_directive,
    resolve_usable_groups,
    user_auto_groups,
)
from ratio_engine.group_settings import GroupSettingsStore


def _store(special: dict | None = None) -> GroupSettingsStore:
    store = GroupSettingsStore()
    store.replace_field(
        "UserUsableGroups", '{"default": "Default group", "vip": "VIP group", "auto": "Auto"}'
    )
    if special is not None:
        store.replace_field("GroupSpecialUsableGroup", json.dumps(special))
    return store


def test_parse_directive_forms() -> None:
    assert parse_directive("remove:vip").remove is True
    assert parse_directive("remove:vip").group == "vip"

    added = parse_directive("add:svip:Super VIP: night tier")
    assert (added.group, added.description, added.remove) == (
        "svip",
        "Super VIP: night tier",
        False,
    )

    bare = parse_directive("beta:Beta testers")
    assert (bare.group, bare.description) == ("beta", "Beta testers")

    assert parse_directive("gamma").description == "gamma"


@pytest.mark.parametrize("raw", ["", "remove:", "add::desc", ":desc"])
def test_parse_directive_rejects_missing_group(raw: str) -> None:
    with pytest.raises(RatioConfigValidationError):
        parse_directive(raw)


def test_empty_caller_group_returns_catalog_copy() -> None:
    store = _store()
    settings = store.get()

    groups = resolve_usable_groups(settings, "")
    groups["injected"] = "x"

    assert "injected" not in settings.usable_groups
    assert resolve_usable_groups(settings, "") == {
        "default": "Default group",
        "vip": "VIP group",
        "auto": "Auto",
    }


def test_directives_apply_in_order() -> None:
    store = _store(
        {
            "vip": [
                "remove:default",
                "add:svip:Super VIP",
                "beta:Beta",
                "svip:Super VIP renamed",
            ]
        }
    )

    groups = resolve_usable_groups(store.get(), "vip")

    assert groups == {
        "vip": "VIP group",
        "auto": "Auto",
        "svip": "Super VIP renamed",
        "beta": "Beta",
    }


def test_caller_group_always_usable() -> None:
    store = _store()

    groups = resolve_usable_groups(store.get(), "enterprise")

    assert groups["enterprise"] == USER_GROUP_DESCRIPTION


def test_caller_group_restored_even_if_removed_by_rule() -> None:
    store = _store({"vip": ["remove:vip"]})

    assert resolve_usable_groups(store.get(), "vip")["vip"] == USER_GROUP_DESCRIPTION


def test_group_membership_and_auto_groups() -> None:
    store = _store({"default": ["remove:vip"]})
    store.replace_field("AutoGroups", '["vip", "default"]')
    settings = store.get()

    assert group_in_usable_groups(settings, "default", "vip") is False
    assert group_in_usable_groups(settings, "vip", "vip") is True
    assert user_auto_groups(settings, "default") == ["default"]
    assert user_auto_groups(settings, "vip") == ["vip", "default"]


@pytest.mark.parametrize(
    ("key", "payload"),
    [
        ("GroupRatio", '{"vip": -1}'),
        ("GroupRatio", '{"vip": "cheap"}'),
        ("GroupRatio", '{"vip": NaN}'),
        ("GroupRatio", '{"vip": Infinity}'),
        ("GroupGroupRatio", '{"vip": {"svip": NaN}}'),
        ("GroupGroupRatio", '{"vip": 1}'),
        ("UserUsableGroups", '{"vip": 1}'),
        ("GroupSpecialUsableGroup", '{"vip": "remove:default"}'),
        ("GroupSpecialUsableGroup", '{"vip": ["remove:"]}'),
        ("AutoGroups", '{"vip": true}'),
        ("Unknown", "{}"),
    ],
)
def test_group_settings_reject_malformed_fields(key: str, payload: str) -> None:
    store = GroupSettingsStore()
    before = store.get()

    with pytest.raises(RatioConfigValidationError):
        store.replace_field(key, payload)

    assert store.get() is before


def test_group_settings_field_json_round_trip() -> None:
    store = GroupSettingsStore()
    store.replace_field("GroupSpecialUsableGroup", '{"vip": ["remove:default", "svip:Super"]}')

    assert json.loads(store.field_to_json("GroupSpecialUsableGroup")) == {
        "vip": ["remove:default", "svip:Super"]
    }
    assert store.get().get_group_ratio("nonexistent") == 1.0
