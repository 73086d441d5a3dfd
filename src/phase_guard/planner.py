# planner.py
# Planning-service adapter.
#
# The planner is a passive responder. It receives the phase task, the tools
# it may call and the running context, and answers with one JSON decision.
# It never calls a tool itself and its numeric risk fields are never
# trusted downstream.

import json
import logging
import re
from typing import Any, Protocol

from openai import OpenAI, OpenAIError

logger = logging.getLogger(__name__)


class PlannerError(Exception):
    """Raised when the planning service call fails."""


class PlannerOutputError(PlannerError):
    """Raised when the planning service answers with unparseable output."""


class Planner(Protocol):
    def plan(self, task: str, schema: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]: ...


# ---------------------------------------------------------------------------
# System Prompt
# ---------------------------------------------------------------------------

PLANNER_SYSTEM_PROMPT = """\
You are the planning step of a guarded trading workflow. You propose; the \
controller decides. Every proposal is checked against tool dependencies and \
safety rules before anything runs.

Respond with EXACTLY one JSON object and no other text, using one of:

{"action": "tool_call", "tool_name": "<name>", "tool_args": {...}, "thought": "<why>"}
{"action": "tool_batch", "calls": [{"tool_name": "<name>", "tool_args": {...}}], "thought": "<why>"}
{"action": "final", "final_output": {...}, "stop_reason": "<why>"}

Rules:
  - Only call tools listed under "tools". Anything else is rejected.
  - Omit arguments the controller can derive (see each tool's derived_inputs).
  - Results marked "rejected" list every violated precondition. Fix them \
before retrying; do not repeat an identical call.
  - Never invent prices, stop-loss levels or quantities. Risk numbers are \
computed by the controller.
  - When the task is done, answer with "final" and an output matching \
"output_schema".\
"""

_FENCE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL)


def extract_json(text: str) -> dict[str, Any]:
    """
    Pull the first JSON object out of a model response.

    Accepts a bare object, a fenced code block, or an object embedded in
    surrounding prose. Raises PlannerOutputError when nothing parses.
    """
    candidates: list[str] = []
    fenced = _FENCE.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    candidates.append(text.strip())
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate, strict=False)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    raise PlannerOutputError(f"Planner response is not a JSON object:\n{text}")


# ---------------------------------------------------------------------------
# OpenAI-compatible planner
# ---------------------------------------------------------------------------


class OpenAIPlanner:
    """
    Planner backed by any OpenAI-compatible chat completions endpoint.

    Example:
        planner = OpenAIPlanner(
            model="anthropic/claude-3.5-haiku",
            base_url="https://openrouter.ai/api/v1",
            api_key=os.getenv("OPENROUTER_API_KEY"),
        )
    """

    def __init__(
        self,
        model: str,
        base_url: str = "https://openrouter.ai/api/v1",
        api_key: str | None = None,
        temperature: float = 0.0,
        client: OpenAI | None = None,
    ) -> None:
        self._model = model
        self._temperature = temperature
        self._client = client or OpenAI(base_url=base_url, api_key=api_key)

    def _call_model(self, messages: list[dict]) -> str:
        try:
            response = self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                temperature=self._temperature,
            )
        except OpenAIError as exc:
            raise PlannerError(f"Planning service call failed: {exc}") from exc
        content = response.choices[0].message.content
        if not content:
            raise PlannerOutputError("Planning service returned an empty response")
        return content.strip()

    def plan(self, task: str, schema: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
        payload = {"task": task, **schema, "context": context}
        messages = [
            {"role": "system", "content": PLANNER_SYSTEM_PROMPT},
            {"role": "user", "content": json.dumps(payload, indent=2, default=str)},
        ]
        response = self._call_model(messages)
        logger.debug("Planner response: %s", response)
        return extract_json(response)
