"""Route-based detection of which provider governs a session."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

RouteMatcher = Callable[[str], bool]


class ContextDetectionResult(BaseModel):
    provider: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)


class ContextDetector:
    """Maps application routes to provider ids."""

    def __init__(self) -> None:
        self._route_matchers: dict[str, RouteMatcher] = {}
        self._id_patterns: dict[str, re.Pattern[str]] = {}

    def register_provider(
        self,
        provider_id: str,
        matcher: RouteMatcher | str,
        id_pattern: str | None = None,
    ) -> None:
        """
        Register a route matcher for a provider.

        Args:
            provider_id: provider the matching routes belong to
            matcher: predicate over the route, or a substring the route must contain
            id_pattern: optional regex whose first group is extracted as `design_id`
        """
        if isinstance(matcher, str):
            fragment = matcher
            matcher = lambda route: fragment in route  # noqa: E731
        self._route_matchers[provider_id] = matcher
        if id_pattern:
            self._id_patterns[provider_id] = re.compile(id_pattern)

    def detect_context(self, route: str) -> ContextDetectionResult:
        for provider_id, matcher in self._route_matchers.items():
            if matcher(route):
                return ContextDetectionResult(
                    provider=provider_id,
                    context=self._extract_context_from_route(route, provider_id),
                )
        return ContextDetectionResult()

    def _extract_context_from_route(self, route: str, provider_id: str) -> dict[str, Any]:
        context: dict[str, Any] = {"route": route}
        pattern = self._id_patterns.get(provider_id)
        if pattern and (match := pattern.search(route)):
            context["design_id"] = match.group(1)
        return context

    def has_provider(self, route: str) -> bool:
        return self.detect_context(route).provider is not None

    def get_provider_ids(self) -> list[str]:
        return list(self._route_matchers.keys())
