"""Confluence Cloud REST API (v2) client and page-hierarchy helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import requests
from requests.auth import HTTPBasicAuth

from . import IntegrationAPIError
from .client import BaseAPIClient
from .utils import normalize_base_url

PAGE_LIMIT = 250


@dataclass(slots=True)
class PageNode:
    page: Dict[str, Any]
    children: List["PageNode"] = field(default_factory=list)

    @property
    def id(self) -> str:
        return str(self.page.get("id"))


def build_page_hierarchy(pages: List[Dict[str, Any]]) -> List[PageNode]:
    """Link a flat page list into trees with two passes over the list.

    The first pass indexes a node per page id; the second attaches each page
    to its parent. A page whose parent is not in the list is returned as a
    root so that it is never dropped. Children keep input order.
    """
    nodes: Dict[str, PageNode] = {}
    for page in pages:
        node = PageNode(page=page)
        nodes[node.id] = node

    roots: List[PageNode] = []
    for page in pages:
        node = nodes[str(page.get("id"))]
        parent_id = page.get("parentId")
        parent = nodes.get(str(parent_id)) if parent_id else None
        if parent is None or parent is node:
            roots.append(node)
        else:
            parent.children.append(node)
    return roots


def iter_page_tree(
    roots: List[PageNode], parent_id: Optional[str] = None
) -> Iterator[tuple[PageNode, Optional[str]]]:
    """Depth-first, pre-order walk yielding ``(node, resolved_parent_id)``."""
    for node in roots:
        yield node, parent_id
        yield from iter_page_tree(node.children, node.id)


class ConfluenceClient(BaseAPIClient):
    platform = "Confluence"

    def __init__(
        self,
        site_url: str,
        email: str,
        api_token: str,
        *,
        space_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ) -> None:
        if not email:
            raise ValueError("Confluence account email must be provided.")
        if not api_token:
            raise ValueError("Confluence API token must be provided.")
        self.site_url = normalize_base_url(site_url)
        super().__init__(
            f"{self.site_url}/wiki/api/v2", session=session, timeout=timeout
        )
        self.space_key = space_key
        self.session.auth = HTTPBasicAuth(email, api_token)

    def _extract_error_message(self, response: requests.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            errors = data.get("errors") or []
            if errors and isinstance(errors[0], dict):
                detail = errors[0].get("title") or errors[0].get("detail")
                if detail:
                    return str(detail)
        return super()._extract_error_message(response)

    def _results(
        self, path: str, params: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """Collect ``results`` across cursor pages linked by ``_links.next``."""
        records: List[Dict[str, Any]] = []
        next_path: Optional[str] = path
        query = params
        while next_path:
            body = self._get(next_path, query) or {}
            records.extend(body.get("results") or [])
            link = (body.get("_links") or {}).get("next")
            # The next link is site-relative and already carries the query.
            next_path = f"{self.site_url}{link}" if link else None
            query = None
        return records

    def _probe(self) -> None:
        self._get("/spaces", {"limit": 1})

    def get_spaces(self, space_key: Optional[str] = None) -> List[Dict[str, Any]]:
        key = space_key or self.space_key
        if key:
            return self._results("/spaces", {"keys": key})
        return self._results("/spaces", {"limit": 100})

    def get_pages(self, space_id: str) -> List[Dict[str, Any]]:
        return self._results(
            f"/spaces/{space_id}/pages",
            {"limit": PAGE_LIMIT, "body-format": "storage"},
        )

    def get_page(self, page_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self._get(f"/pages/{page_id}", {"body-format": "storage"})
        except IntegrationAPIError as exc:
            if exc.status_code == 404:
                return None
            raise

    def get_child_pages(self, page_id: str) -> List[Dict[str, Any]]:
        return self._results(f"/pages/{page_id}/children", {"limit": PAGE_LIMIT})

    def get_page_hierarchy(self, space_id: str) -> List[PageNode]:
        return build_page_hierarchy(self.get_pages(space_id))
