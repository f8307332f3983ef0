# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Usable group resolution.

Starts from the base catalog of usable groups and layers the caller
group's special directives on top:

    "remove:<group>"        drop the group
    "add:<group>:<desc>"    add or overwrite the group
    "<group>:<desc>"        same as add

Directives apply in listed order, so later ones win.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List

from .errors import RatioConfigValidationError

if TYPE_CHECKING:
    from .group_settings import GroupSettings

USER_GROUP_DESCRIPTION = "user-specific group"

_REMOVE_PREFIX = "remove:"
_ADD_PREFIX = "add:"


@dataclass(frozen=True)
class GroupDirective:
    group: str
    description: str = ""
    remove: bool = False


def parse_directive(raw: str) -> GroupDirective:
    """
    Parse a single special-rule directive.

    A directive without a description describes the group by its own name.
    Descriptions may contain colons.
    """
    text = raw.strip()
    if text.startswith(_REMOVE_PREFIX):
        group = text[len(_REMOVE_PREFIX):].strip()
        if not group:
            raise RatioConfigValidationError(f"directive '{raw}' names no group")
        return GroupDirective(group=group, remove=True)

    if text.startswith(_ADD_PREFIX):
        text = text[len(_ADD_PREFIX):]

    group, _, description = text.partition(":")
    group = group.strip()
    if not group:
        raise RatioConfigValidationError(f"directive '{raw}' names no group")
    return GroupDirective(group=group, description=description.strip() or group)


def resolve_usable_groups(settings: "GroupSettings", caller_group: str) -> Dict[str, str]:
    """
    Compute the groups a caller may use, mapped to their descriptions.

    Args:
        settings: Current group settings snapshot
        caller_group: The caller's own group; may be empty

    Returns:
        A fresh dict the caller is free to mutate. Always contains
        caller_group when it is non-empty.
    """
    groups = dict(settings.usable_groups)
    if not caller_group:
        return groups

    for raw in settings.special_usable_groups.get(caller_group, ()):
        directive = parse_directive(raw)
        if directive.remove:
            groups.pop(directive.group, None)
        else:
            groups[directive.group] = directive.description

    if caller_group not in groups:
        groups[caller_group] = USER_GROUP_DESCRIPTION
    return groups


def group_in_usable_groups(
    settings: "GroupSettings", caller_group: str, group: str
) -> bool:
    return group in resolve_usable_groups(settings, caller_group)


def user_auto_groups(settings: "GroupSettings", caller_group: str) -> List[str]:
    """Auto groups, in configured order, that the caller is allowed to use."""
    usable = resolve_usable_groups(settings, caller_group)
    return [group for group in settings.auto_groups if group in usable]
