# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/jira_time/utils/url.py

from typing import Mapping, Optional
from urllib.parse import quote_plus


def percent_encode(value: Optional[str]) -> str:
    """
    Percent-encode a value for a query string or form body.

    Everything outside the unreserved set (ALPHA / DIGIT / "-" / "." / "_" / "~")
    is escaped, except that spaces become "+" rather than "%20".
    """
    if value is None:
        return ""
    return quote_plus(str(value), safe="")


def encode_params(params: Mapping[str, Optional[str]]) -> str:
    """Join key/value pairs into ``k=v&k=v`` with :func:`percent_encode`."""
    return "&".join(
        f"{percent_encode(key)}={percent_encode(value)}" for key, value in params.items()
    )
