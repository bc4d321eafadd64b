"""Lookup table of every supported target, keyed by its tag."""

from __future__ import annotations

from errors import InputError
from targets import Target
from targets_amazon import AMAZON_TARGETS
from targets_deb import DEB_TARGETS
from targets_rpm import RPM_TARGETS
from targets_vanilla import VANILLA_TARGETS

TARGETS: dict[str, Target] = {
    target.name: target for target in (*DEB_TARGETS, *RPM_TARGETS, *AMAZON_TARGETS, *VANILLA_TARGETS)
}


def get_target(tag: str) -> Target:
    """Return the target registered under *tag*.

    Every ``ubuntu*`` spelling (``ubuntu-generic``, ``ubuntu-aws``, ...) maps
    to the single ubuntu target.
    """

    if tag.startswith("ubuntu"):
        tag = "ubuntu"
    try:
        return TARGETS[tag]
    except KeyError:
        raise InputError(f"target not found: {tag}") from None


def target_names() -> list[str]:
    return sorted(TARGETS)
