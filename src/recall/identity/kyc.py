"""Merge an extracted KYC profile into the registry as reviewable suggestions.

Profile fields on the contact are never overwritten here; every extracted
item becomes a pending suggestion that a human accepts or declines.
"""

from __future__ import annotations

import logging
from typing import Any

from recall.db.models import Contact
from recall.identity.registry import IdentityRegistry
from recall.workqueue import WorkQueue

logger = logging.getLogger(__name__)

KYC_TYPES: tuple[str, ...] = ("links", "emails", "phones", "addresses", "hashtags", "notes")
_MIN_LENGTH = 3


def merge_profile(
    registry: IdentityRegistry,
    profile: dict[str, Any] | None,
    queue: WorkQueue | None = None,
) -> Contact | None:
    """Stage every string item of *profile* longer than two characters.

    With a *queue* the staging calls run in the background and this returns
    immediately; without one they run inline.

    Profiles for handles the registry does not know are ignored.

    Returns:
        The contact the profile handle resolves to, or None.
    """
    if not profile or not profile.get("handle"):
        return None
    handle = str(profile["handle"])
    if registry.resolve(handle) is None:
        logger.debug("kyc profile for unknown contact %s ignored", handle)
        return None

    staged = 0
    for kind in KYC_TYPES:
        items = profile.get(kind)
        if not isinstance(items, list):
            continue
        for content in items:
            if not isinstance(content, str) or len(content) < _MIN_LENGTH:
                continue
            if queue is not None:
                queue.submit(registry.stage_suggestion, handle, kind, content)
            else:
                registry.stage_suggestion(handle, kind, content)
            staged += 1

    logger.debug("kyc profile for %s: %d items staged", handle, staged)
    return registry.resolve(handle)
