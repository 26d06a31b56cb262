"""Thin MCP server for photomind.

Delegates all work to the photomind service daemon via HTTP.
No torch, numpy, or PIL imports in this process.
"""

import json
import logging

from mcp.server.fastmcp import FastMCP

from photomind.client import ServiceClient, ServiceError
from photomind.config import DEFAULT_LIMIT, DEFAULT_TOP_K

logger = logging.getLogger(__name__)

mcp = FastMCP("photomind")
client = ServiceClient()


@mcp.tool()
def search(query: str, limit: int = DEFAULT_LIMIT, sort_by: str = "mixed", intent_type: str = "") -> str:
    """Search photos by keywords and natural language together.

    File names, folders and metadata are matched by keyword; photo content
    is matched by CLIP text/image similarity. Scores from both are fused.

    Args:
        query: Words or a description of the photo to find.
        limit: Maximum number of results (default 50).
        sort_by: "mixed", "keyword", "semantic" or "recency".
        intent_type: Optional query type hint ("keyword", "semantic", "people",
            "location", "time") that shifts the keyword/vector weighting.
    """
    intent = {"type": intent_type} if intent_type else None
    return client.search(query, intent=intent, limit=limit, sort_by=sort_by)


@mcp.tool()
def quick_search(query: str, top_k: int = DEFAULT_TOP_K) -> str:
    """Content-only search: the top photos by CLIP similarity to the query.

    Args:
        query: Natural language description.
        top_k: Number of results (default 10).
    """
    return client.quick_search(query, top_k)


@mcp.tool()
def scan_faces() -> str:
    """Start detecting faces in every photo not scanned yet.

    Runs in the background inside the service. A scan interrupted by a crash
    can be resumed with resume_scan.
    """
    try:
        job_id = client.start_scan()
    except ServiceError as exc:
        return f"Could not start scan: {exc.message}"
    return f"Started scan job {job_id}."


@mcp.tool()
def resume_scan(job_id: str) -> str:
    """Resume an interrupted face scan from its last checkpoint.

    Args:
        job_id: Id of a scan job still in the detecting state.
    """
    try:
        data = client.resume_scan(job_id)
    except ServiceError as exc:
        return f"Could not resume: {exc.message}"
    return f"Resumed {data['job_id']}: {data['queued']} photos queued."


@mcp.tool()
def cancel_scan() -> str:
    """Cancel the running face scan. Faces found so far are kept."""
    job_id = client.cancel_scan()
    return f"Cancelled scan job {job_id}." if job_id else "No scan is running."


@mcp.tool()
def scan_status() -> str:
    """Show the face scan queue and the active scan job."""
    return json.dumps({"queue": client.queue_status(), "active_job": client.active_job()}, indent=2)


@mcp.tool()
def match_faces(threshold: float | None = None) -> str:
    """Group unassigned faces into people.

    Faces close to an existing person join that person; the rest are
    clustered and each cluster becomes a new "Unnamed N" person.

    Args:
        threshold: Cosine similarity a face must exceed to match (default 0.45).
    """
    result = client.auto_match(threshold)
    return (
        f"Matched {result['matched']} faces, created {result['persons_created']} persons "
        f"from {len(result['clusters'])} clusters."
    )


@mcp.tool()
def list_persons() -> str:
    """List known people with their face counts."""
    people = client.persons()
    if not people:
        return "No persons yet."
    return "\n".join(f"- [{p['id']}] {p['display_name']} ({p['face_count']} faces)" for p in people)


@mcp.tool()
def person_photos(name: str, year: int | None = None, limit: int = 50) -> str:
    """List photos that show a person, looked up by name.

    Args:
        name: Person name or part of it, e.g. "Unnamed 2" or "alice"
        year: Only photos taken in this year
        limit: Maximum number of photos to list
    """
    try:
        data = client.person_photos(name=name, year=year, limit=limit)
    except ServiceError as exc:
        return f"Could not find photos: {exc.message}"
    person = data["person"]
    if not data["photos"]:
        return f"No photos of {person['display_name']}."
    lines = [f"{person['display_name']}: {data['total']} photos"]
    lines += [f"- {p['file_path']}" + (f" ({p['taken_at']})" if p["taken_at"] else "") for p in data["photos"]]
    return "\n".join(lines)


@mcp.tool()
def merge_persons(source_id: int, target_id: int) -> str:
    """Move every face of one person to another and delete the first.

    Args:
        source_id: Person to merge away.
        target_id: Person that keeps the faces.
    """
    try:
        merged = client.merge_persons(source_id, target_id)
    except ServiceError as exc:
        return f"Could not merge: {exc.message}"
    return f"Moved {merged} faces from person {source_id} to {target_id}."


@mcp.tool()
def similar_faces(face_id: int, min_similarity: float = 0.5) -> str:
    """Find faces that look like the given face.

    Args:
        face_id: Id of the reference face.
        min_similarity: Lowest cosine similarity to include (default 0.5).
    """
    results = client.similar_faces(face_id, min_similarity)
    if not results:
        return "No similar faces found."
    return json.dumps(results, indent=2)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    mcp.run(transport="stdio")
