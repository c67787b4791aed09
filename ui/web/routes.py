"""
Web Routes - Dashboard API endpoints
====================================

This module defines the JSON API used by the dashboard.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from core.logging import get_logger
from rules.store import export_rules, import_rules
from services.runtime import reload_rules

logger = get_logger("web.routes")

router = APIRouter()


class ImportRequest(BaseModel):
    """Rule import model."""
    document: Union[Dict[str, Any], List[Dict[str, Any]]]
    merge: bool = True
    save: bool = True


class TestRequest(BaseModel):
    """Dry-run test model."""
    text: str
    session_state: Optional[str] = None
    session_id: str = Field(default="jat-TestAgent")


class RateLimitReset(BaseModel):
    """Rate limit reset model."""
    rule_id: Optional[str] = None


@router.get("/api/status")
async def get_status(request: Request):
    """Get engine and watcher status."""
    engine = request.app.state.engine
    watcher = request.app.state.watcher
    config = request.app.state.config

    return {
        "app": config.app_name,
        "version": config.version,
        "engine": engine.get_stats(),
        "watcher": watcher.get_status(),
        "rules_file": str(config.rules_path),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/api/activity")
async def get_activity(
    request: Request,
    limit: int = Query(50, ge=1, le=1000),
    session: Optional[str] = Query(None),
    rule: Optional[str] = Query(None)
):
    """Recent activity, newest first."""
    engine = request.app.state.engine

    entries = engine.recent_activity(limit if not (session or rule) else engine.activity_log.max_entries)
    if session:
        entries = [e for e in entries if e.session_id == session]
    if rule:
        entries = [e for e in entries if e.rule_id == rule]

    return {"entries": [e.to_dict() for e in entries[:limit]]}


@router.get("/api/rules")
async def list_rules(request: Request):
    """Rules in evaluation order."""
    engine = request.app.state.engine
    snapshot = engine.snapshot

    return {
        "version": snapshot.version,
        "loadedAt": snapshot.loaded_at.isoformat(),
        "rules": [rule.to_dict() for rule in snapshot.rules],
    }


@router.get("/api/rules/export")
async def export_rule_document(request: Request):
    """Export the active rules as a document."""
    return export_rules(request.app.state.engine.rules)


@router.get("/api/rules/{rule_id}")
async def get_rule(request: Request, rule_id: str):
    """A single rule with its rate limit status."""
    engine = request.app.state.engine

    rule = engine.get_rule(rule_id)
    if rule is None:
        raise HTTPException(status_code=404, detail="Rule not found")

    data = rule.to_dict()
    data["rateLimit"] = engine.rate_limiter.get_status(rule_id)
    return data


@router.post("/api/rules/reload")
async def reload_rule_file(request: Request):
    """Reload the rule file; the current rules stay active on error."""
    engine = request.app.state.engine
    store = request.app.state.rule_store

    snapshot = reload_rules(engine, store)
    return {"success": True, "version": snapshot.version, "rules": len(snapshot.rules)}


@router.post("/api/rules/import")
async def import_rule_document(request: Request, body: ImportRequest):
    """Import a rule document, merging by id or replacing the set."""
    engine = request.app.state.engine
    store = request.app.state.rule_store

    rules = import_rules(engine.rules, body.document, merge=body.merge)
    snapshot = engine.load_rules(rules)
    if body.save:
        store.save(snapshot.rules)

    logger.info(f"Imported rules via API ({'merge' if body.merge else 'replace'})")
    return {"success": True, "version": snapshot.version, "rules": len(snapshot.rules)}


@router.post("/api/test")
async def test_text(request: Request, body: TestRequest):
    """Dry run: which rules would fire on a text, and with what payloads."""
    engine = request.app.state.engine

    results = engine.evaluate(body.text, body.session_state, session_id=body.session_id)
    return {"matches": [r.to_dict() for r in results]}


@router.post("/api/rate-limits/reset")
async def reset_rate_limits(request: Request, body: RateLimitReset):
    """Reset rate limits for one rule, or all of them."""
    engine = request.app.state.engine

    if body.rule_id and engine.get_rule(body.rule_id) is None:
        raise HTTPException(status_code=404, detail="Rule not found")

    engine.rate_limiter.reset(body.rule_id)
    return {"success": True, "rule_id": body.rule_id}
