"""
Identity resolution for TigerDorm.

The identity provider signs a token; an upstream verifier checks it and
hands this layer the claim set. This module only extracts the principal.

Invariants:
    - resolve_principal never raises
    - Anything unusable resolves to None ("no identity"), which every
      policy treats as deny-all
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

logger = logging.getLogger(__name__)

# Checked in order; "sub" is the registered JWT claim.
SUBJECT_CLAIMS = ("sub", "subject")


def resolve_principal(claims: Mapping[str, Any] | str | bytes | None) -> str | None:
    """Extract the acting principal from a verified claim set.

    Args:
        claims: Claim mapping, or the claim set as JSON text

    Returns:
        The subject identifier, or None if it cannot be determined

    Example:
        >>> resolve_principal({"sub": "user_2abc"})
        'user_2abc'
        >>> resolve_principal('{"sub": "user_2abc"}')
        'user_2abc'
        >>> resolve_principal("not json") is None
        True
    """
    try:
        if claims is None:
            return None
        if isinstance(claims, (str, bytes)):
            claims = json.loads(claims)
        if not isinstance(claims, Mapping):
            return None

        for name in SUBJECT_CLAIMS:
            subject = claims.get(name)
            if isinstance(subject, str) and subject.strip():
                return subject.strip()
        return None

    except Exception as e:
        logger.debug(f"Unparseable claim set: {e}")
        return None
