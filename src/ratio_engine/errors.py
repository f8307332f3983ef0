# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel


class PricingError(Exception):
    """Base class for errors raised by the ratio engine."""


class RatioConfigValidationError(PricingError, ValueError):
    """An administrative configuration payload was rejected before commit."""


class UpstreamUnavailable(PricingError, RuntimeError):
    """The log store or key-value store could not be read."""


class GroupNotUsable(PricingError, LookupError):
    """The caller's group may not bill requests against the target group."""
