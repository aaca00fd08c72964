"""Directed relationships between artifacts and thread reconstruction."""

from collections import deque
from typing import Any, Dict, List, Optional, Set

from db.sqlite_client import SQLiteClient

from .types import is_valid_artifact_relation


class EdgeService:
    def __init__(self, client: SQLiteClient):
        self.client = client

    async def create_edge(self, from_id: str, to_id: str, relation: str) -> Dict[str, Any]:
        if not is_valid_artifact_relation(relation):
            raise ValueError(f"Invalid artifact relation: {relation}")
        return await self.client.create_edge(from_id, to_id, relation)

    async def get_edge(self, edge_id: str) -> Optional[Dict[str, Any]]:
        return await self.client.get_edge(edge_id)

    async def get_edges_from(
        self, artifact_id: str, relation: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        return await self.client.list_edges(from_id=artifact_id, relation=relation)

    async def get_edges_to(
        self, artifact_id: str, relation: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        return await self.client.list_edges(to_id=artifact_id, relation=relation)

    async def get_thread(self, seed_id: str) -> Dict[str, Any]:
        """
        Breadth-first walk over edges in both directions from ``seed_id``.

        Returns ``{"artifacts": [...], "edges": [...]}``; artifacts are the
        active members of the thread, oldest first. Deleted artifacts still
        connect the walk but are not returned.
        """
        visited: Set[str] = set()
        edges: Dict[str, Dict[str, Any]] = {}
        queue = deque([seed_id])

        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)

            for edge in await self.client.list_edges(from_id=current):
                edges.setdefault(edge["id"], edge)
                if edge["to_id"] not in visited:
                    queue.append(edge["to_id"])
            for edge in await self.client.list_edges(to_id=current):
                edges.setdefault(edge["id"], edge)
                if edge["from_id"] not in visited:
                    queue.append(edge["from_id"])

        artifacts = await self.client.get_artifacts_by_ids(list(visited))
        return {"artifacts": artifacts, "edges": list(edges.values())}

    async def get_follow_up_chain(self, artifact_id: str) -> List[Dict[str, Any]]:
        """Follow ``follows_up`` edges forward from an active seed."""
        seed = await self.client.get_artifact(artifact_id)
        if seed is None or seed.get("status") != "active":
            return []

        chain = [seed]
        visited = {seed["id"]}
        current = seed["id"]
        while True:
            next_edges = await self.client.list_edges(from_id=current, relation="follows_up")
            if not next_edges or next_edges[0]["to_id"] in visited:
                break
            nxt = await self.client.get_artifact(next_edges[0]["to_id"])
            if nxt is None or nxt.get("status") != "active":
                break
            chain.append(nxt)
            visited.add(nxt["id"])
            current = nxt["id"]
        return chain

    async def get_summaries_for(self, session_id: str) -> List[Dict[str, Any]]:
        return await self.client.list_artifacts(
            session_id=session_id, types=["conversation_session_summary"], limit=100
        )

    async def delete_edge(self, edge_id: str) -> bool:
        return await self.client.delete_edge(edge_id)

    async def delete_edges_for_artifact(self, artifact_id: str) -> int:
        return await self.client.delete_edges_for_artifact(artifact_id)
