#!/usr/bin/env python3
from __future__ import annotations

import importlib
import json
import os
import sys
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from fastapi.testclient import TestClient


@dataclass
class Scenario:
  name: str
  messages: list[str]
  check: Callable[[dict[str, Any]], str | None]
  transcript: list[dict[str, Any]] = field(default_factory=list)


def _step(body: dict[str, Any]) -> str | None:
  subflow = (body.get("state") or {}).get("subflow")
  if isinstance(subflow, dict):
    return subflow.get("step")
  return None


def check_opening(body: dict[str, Any]) -> str | None:
  if body.get("topic") != "conversation_start":
    return f"Expected conversation_start, got {body.get('topic')!r}"
  if "Ask Eve Assist" not in body["response"]["text"]:
    return "Opening statement missing."
  return None


def check_crisis(body: dict[str, Any]) -> str | None:
  text = body["response"]["text"]
  if not body.get("escalation_triggered"):
    return "Crisis turn did not trigger escalation."
  missing = [number for number in ("999", "116 123") if number not in text]
  if missing:
    return f"Emergency numbers missing: {missing}"
  return None


def check_callback(body: dict[str, Any]) -> str | None:
  if _step(body) != "completed":
    return f"Expected completed callback request, got {_step(body)!r}"
  if not body.get("escalation_triggered"):
    return "Completed callback request was not flagged as escalated."
  return None


def check_cancel(body: dict[str, Any]) -> str | None:
  if _step(body) != "cancelled":
    return f"Expected cancelled callback request, got {_step(body)!r}"
  contact = (body.get("state") or {}).get("contact_info") or {}
  if any(contact.get(key) for key in ("name", "phone", "email")):
    return "Contact details were not cleared."
  return None


def check_information(body: dict[str, Any]) -> str | None:
  if body.get("topic") != "health_information_router":
    return f"Expected health_information_router, got {body.get('topic')!r}"
  if "eveappeal.org.uk" not in body["response"]["text"]:
    return "Answer did not cite an Eve Appeal source."
  return None


def run() -> int:
  repo_root = Path(__file__).resolve().parents[1]
  backend_dir = repo_root / "backend"
  if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

  scratch = tempfile.TemporaryDirectory(prefix="askeve-smoke-")
  # Smoke runs stay local: throwaway database, curated content, logged callbacks.
  os.environ["ASKEVE_DB_PATH"] = str(Path(scratch.name) / "smoke.sqlite")
  os.environ.pop("ASKEVE_CONTENT_SEARCH_URL", None)
  os.environ.pop("ASKEVE_NURSE_WEBHOOK_URL", None)

  backend_module = importlib.import_module("main")
  backend_module = importlib.reload(backend_module)

  run_id = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
  headers = {"X-User-Id": "smoke-user"}

  scenarios = [
    Scenario(name="Opening Statement", messages=["hello"], check=check_opening),
    Scenario(name="Crisis Routing", messages=["I want to kill myself"], check=check_crisis),
    Scenario(
      name="Nurse Callback",
      messages=["hello", "speak to a nurse", "yes", "Jane", "1", "07123456789", "yes"],
      check=check_callback,
    ),
    Scenario(
      name="Cancel During Contact Details",
      messages=["hello", "speak to a nurse", "yes", "Jane", "1", "cancel"],
      check=check_cancel,
    ),
    Scenario(
      name="Health Information",
      messages=["hello", "What are the symptoms of ovarian cancer?"],
      check=check_information,
    ),
  ]

  results: list[dict[str, Any]] = []

  with TestClient(backend_module.app) as client:
    for index, scenario in enumerate(scenarios, start=1):
      conversation_id = f"smoke-{run_id}-{index}"
      scenario_result: dict[str, Any] = {"name": scenario.name, "conversation_id": conversation_id}
      body: dict[str, Any] = {}
      for message in scenario.messages:
        response = client.post(
          "/chat",
          headers=headers,
          json={"message": message, "conversation_id": conversation_id},
        )
        if response.status_code != 200:
          scenario_result["error"] = f"/chat returned {response.status_code} for {message!r}"
          break
        body = response.json()
        scenario.transcript.append(
          {
            "user": message,
            "assistant": body["response"]["text"][:160],
            "topic": body.get("topic"),
            "step": _step(body),
          }
        )

      if "error" not in scenario_result:
        error = scenario.check(body)
        if error:
          scenario_result["error"] = error
      scenario_result["pass"] = "error" not in scenario_result
      scenario_result["transcript"] = scenario.transcript
      results.append(scenario_result)

    health = client.get("/health").json()

  scratch.cleanup()

  passed = sum(1 for item in results if item.get("pass"))
  failed = len(results) - passed
  timestamp = datetime.now(timezone.utc).isoformat()

  report_lines = [
    "# Ask Eve Conversation Smoke Report",
    "",
    f"- Timestamp (UTC): `{timestamp}`",
    f"- Registered topics: `{health.get('registered_topic_count')}`",
    f"- Service status: `{json.dumps(health.get('per_service_status'))}`",
    f"- Total scenarios: `{len(results)}`",
    f"- Passed: `{passed}`",
    f"- Failed: `{failed}`",
    "",
    "## Scenario Results",
    "",
  ]

  for item in results:
    status = "PASS" if item.get("pass") else "FAIL"
    report_lines.append(f"### {status} - {item['name']}")
    report_lines.append(f"- Conversation: `{item['conversation_id']}`")
    if item.get("error"):
      report_lines.append(f"- Error: `{item['error']}`")
    report_lines.append("- Transcript:")
    report_lines.append("```json")
    report_lines.append(json.dumps(item.get("transcript"), indent=2, ensure_ascii=True))
    report_lines.append("```")
    report_lines.append("")

  report_path = repo_root / "CONVERSATION_SMOKE_REPORT.md"
  report_path.write_text("\n".join(report_lines), encoding="utf-8")
  print(f"Wrote report: {report_path}")
  print(f"Passed {passed}/{len(results)} scenarios.")

  return 0 if failed == 0 else 1


if __name__ == "__main__":
  raise SystemExit(run())
