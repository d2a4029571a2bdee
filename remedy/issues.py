"""Issue feed collaborators: where detected insights come from and go back to."""

from __future__ import annotations

import logging
from dataclasses import fields, replace
from typing import Protocol

import httpx

from .models import Issue

logger = logging.getLogger(__name__)


class IssueFeed(Protocol):
    async def list_issues(self) -> list[Issue]: ...

    async def get_issue_by_id(self, issue_id: str) -> Issue | None: ...

    async def mark_issue_resolved(self, issue_id: str, resolved_at: str) -> Issue | None: ...


SAMPLE_ISSUES: tuple[Issue, ...] = (
    Issue(
        id="insight-001",
        type="credential_expiration",
        severity="critical",
        title="API credential expiring in 3 days",
        description=(
            "The production API key used by three integrations expires soon. "
            "Payment processing, order management and inventory sync will fail."
        ),
        detected_at="2024-03-28T09:15:00Z",
        affected_entities=[
            "Payment Gateway Integration",
            "Order Processing API",
            "Inventory Sync Service",
        ],
    ),
    Issue(
        id="insight-002",
        type="security_risk",
        severity="high",
        title="Unusual authentication pattern detected",
        description="Repeated failed token exchanges from an unrecognised network range.",
        detected_at="2024-03-29T14:02:00Z",
        affected_entities=["User Authentication API", "Data Access Service"],
    ),
    Issue(
        id="insight-003",
        type="performance_degradation",
        severity="medium",
        title="Response times degraded on order endpoints",
        description="p95 latency doubled over the last 24 hours.",
        detected_at="2024-03-30T08:40:00Z",
        affected_entities=["Order Processing API", "Product Catalog API"],
    ),
    Issue(
        id="insight-004",
        type="integration_failure",
        severity="low",
        title="Sandbox webhook deliveries failing",
        description="Webhook deliveries to the sandbox environment are timing out.",
        detected_at="2024-03-27T16:20:00Z",
        status="resolved",
        resolved_at="2024-03-29T11:30:00Z",
        affected_entities=["Sandbox Test Environment"],
    ),
    Issue(
        id="insight-005",
        type="compliance_issue",
        severity="high",
        title="Audit logging gaps detected",
        description="Some gateway requests were not captured by the audit log.",
        detected_at="2024-03-31T07:55:00Z",
        status="resolved",
        resolved_at="2024-04-01T10:00:00Z",
        affected_entities=["Audit Logging Service", "API Gateway"],
    ),
)


class MemoryIssueFeed:
    """In-process feed seeded with sample insights."""

    def __init__(self, issues: list[Issue] | tuple[Issue, ...] | None = None):
        seed = SAMPLE_ISSUES if issues is None else issues
        self._issues: dict[str, Issue] = {i.id: replace(i) for i in seed}

    async def list_issues(self) -> list[Issue]:
        return list(self._issues.values())

    async def get_issue_by_id(self, issue_id: str) -> Issue | None:
        return self._issues.get(issue_id)

    async def mark_issue_resolved(self, issue_id: str, resolved_at: str) -> Issue | None:
        issue = self._issues.get(issue_id)
        if issue is None:
            logger.warning("Cannot resolve unknown issue %s", issue_id)
            return None
        issue.status = "resolved"
        issue.resolved_at = resolved_at
        logger.info("Issue %s marked resolved at %s", issue_id, resolved_at)
        return issue


def _issue_from_json(data: dict) -> Issue:
    known = {f.name for f in fields(Issue)}
    return Issue(**{k: v for k, v in data.items() if k in known})


class HttpIssueFeed:
    """Issue feed served by a remote REST endpoint."""

    def __init__(self, base_url: str, api_token: str = "", timeout: float = 30):
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_token}"} if api_token else {}
        self.client = httpx.AsyncClient(timeout=timeout, headers=headers)

    async def list_issues(self) -> list[Issue]:
        resp = await self.client.get(f"{self.base_url}/issues")
        resp.raise_for_status()
        return [_issue_from_json(d) for d in resp.json()]

    async def get_issue_by_id(self, issue_id: str) -> Issue | None:
        resp = await self.client.get(f"{self.base_url}/issues/{issue_id}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return _issue_from_json(resp.json())

    async def mark_issue_resolved(self, issue_id: str, resolved_at: str) -> Issue | None:
        resp = await self.client.patch(
            f"{self.base_url}/issues/{issue_id}",
            json={"status": "resolved", "resolved_at": resolved_at},
        )
        resp.raise_for_status()
        return _issue_from_json(resp.json())

    async def close(self) -> None:
        await self.client.aclose()
