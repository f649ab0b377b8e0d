"""
Background worker: enrich retirement archives with an LLM-written summary.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

from .core.config import Config
from .core.db import Database
from .core.models import SummaryJob
from .summarize.llm import call_llm_text

logger = logging.getLogger(__name__)

# "## Summary" up to the next level-2 heading or end of file
_SUMMARY_SECTION_RE = re.compile(r"(^## Summary[ \t]*\n)(.*?)(?=^## |\Z)", re.MULTILINE | re.DOTALL)


def process_summary_jobs(*, db: Database, config: Config, max_jobs: int = 10) -> int:
    """
    Process pending summary jobs.

    Returns number of jobs completed.
    """
    config.inject_api_key()
    processed = 0

    for _ in range(max_jobs):
        job = db.claim_summary_job()
        if not job:
            break

        try:
            _process_job(job, config)
            db.complete_summary_job(job.id)
            processed += 1
            logger.info(f"Summary job {job.id} ({job.stream_id}) done")
        except Exception as e:
            logger.error(f"Summary job {job.id} ({job.stream_id}) failed: {e}")
            db.fail_summary_job(job.id, str(e))

    return processed


def _process_job(job: SummaryJob, config: Config) -> None:
    archive = Path(job.archive_path)
    if not archive.exists():
        raise FileNotFoundError(f"Archive not found: {archive}")
    current = archive.read_text(encoding="utf-8")

    payload = {
        "stream": {
            "id": job.stream_id,
            "title": job.title,
            "branch": job.branch,
            "category": job.category,
            "worktree_path": job.worktree_path,
            "created_at": job.stream_created_at,
            "completed_at": job.stream_completed_at,
        },
        "author_summary": job.user_summary,
        "archive": current,
    }
    body = call_llm_text(
        "retirement_summary",
        json.dumps(payload, ensure_ascii=False, indent=2),
        model=config.llm_model,
        timeout=config.llm_timeout,
    )
    if not body:
        raise RuntimeError("LLM returned no summary")

    archive.write_text(replace_summary_section(current, body), encoding="utf-8")


def replace_summary_section(document: str, body: str) -> str:
    """Swap the body of the `## Summary` section, appending one if missing."""
    new_body = f"\n{body.strip()}\n\n"
    if _SUMMARY_SECTION_RE.search(document):
        return _SUMMARY_SECTION_RE.sub(lambda m: m.group(1) + new_body, document, count=1)
    return document.rstrip("\n") + "\n\n## Summary\n" + new_body
