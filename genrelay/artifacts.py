"""
Structured artifact generation.

Artifacts are JSON objects (personas, flows, wireframes, ...) produced by a
chat model. Parsing is a separate fallible step; when a model answers with
something that is not a JSON object it is asked once to reformat before the
orchestrator moves on to another model.
"""

import json
import logging
import re
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .errors import AdapterError, ArtifactParseError, ErrorKind
from .models import GenerationRequest, Message, ModelDescriptor, ProviderResponse
from .provider_client import ProviderAdapter

logger = logging.getLogger(__name__)

ARTIFACT_SYSTEM_PROMPT = (
    "You are a design assistant that produces structured deliverables. "
    "Return ONLY a single valid JSON object. Do not use markdown formatting. "
    "Escape all newlines and quotes inside string values (use \\n for newlines)."
)

REFORMAT_PROMPT = (
    "Your previous answer could not be parsed as JSON. Reply again with ONLY "
    "the JSON object, no prose and no code fences."
)

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


def parse_structured_artifact(text: str) -> Dict[str, Any]:
    """
    Extract a JSON object from model output.

    Strips code fences, takes the outermost ``{...}`` span and parses it.
    A second, lenient pass accepts raw control characters (unescaped
    newlines) inside strings. Anything that is not a JSON object raises
    ``ArtifactParseError``.
    """
    cleaned = _FENCE_RE.sub("", text or "")
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        raise ArtifactParseError("No JSON object found in response", text)

    candidate = cleaned[start:end + 1]
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        try:
            parsed = json.loads(candidate, strict=False)
        except json.JSONDecodeError as e:
            raise ArtifactParseError(f"Invalid JSON in response: {e.msg}", text) from e

    if not isinstance(parsed, dict):
        raise ArtifactParseError("Response JSON is not an object", text)
    return parsed


# =============================================================================
# Tools and prompts
# =============================================================================

class ArtifactTool(str, Enum):
    PERSONA = "persona"
    JTBD = "jtbd"
    JOURNEY = "journey"
    FLOW = "flow"
    WIREFRAME = "wireframe"
    COMPONENT = "component"
    MICROCOPY = "microcopy"
    SWOT_ANALYSIS = "swot-analysis"
    COLOR_PALETTE = "color-palette"


def _product_header(context: Mapping[str, Any]) -> str:
    lines = [f"Product: {context.get('name', 'Untitled product')}"]
    if context.get("productType"):
        lines.append(f"Type: {context['productType']}")
    platforms = context.get("platforms")
    if platforms:
        lines.append(f"Platforms: {', '.join(platforms) if isinstance(platforms, list) else platforms}")
    if context.get("businessModel"):
        lines.append(f"Business Model: {context['businessModel']}")
    return "\n".join(lines)


_TEMPLATES: Dict[ArtifactTool, str] = {
    ArtifactTool.PERSONA: """Based on the product context and user description below, write a detailed user persona.

{product}

User Description: {description}

Use this JSON format:
{{
  "name": "Full name",
  "role": "Job title or role",
  "initials": "Two letter initials",
  "category": "primary" or "secondary",
  "goals": ["Goal 1", "Goal 2", "Goal 3"],
  "behaviors": ["Behavior 1", "Behavior 2", "Behavior 3"],
  "painPoints": ["Pain point 1", "Pain point 2", "Pain point 3"],
  "environment": "Where and how they use the product",
  "accessibility": "Accessibility considerations"
}}""",
    ArtifactTool.JTBD: """Build a Jobs-to-be-Done breakdown.

{product}
User Type: {userType}

Use this JSON format:
{{
  "userType": "{userType}",
  "jobStatement": "When [situation], I want to [motivation], so I can [expected outcome]",
  "functionalJobs": ["Job 1", "Job 2", "Job 3"],
  "emotionalJobs": ["How they want to feel"],
  "socialJobs": ["How they want to be perceived"],
  "outcomes": ["Outcome 1", "Outcome 2", "Outcome 3"]
}}""",
    ArtifactTool.JOURNEY: """Map the user journey.

{product}
Goal: {goal}

Use this JSON format with 4-6 stages:
{{
  "goal": "{goal}",
  "stages": [
    {{
      "name": "Stage name",
      "userGoals": ["What the user wants"],
      "actions": ["What the user does"],
      "emotions": "positive, negative or neutral",
      "painPoints": ["Frustrations"],
      "opportunities": ["Improvements"]
    }}
  ],
  "mermaidChart": "Mermaid.js journey diagram"
}}""",
    ArtifactTool.FLOW: """Design a user flow.

{product}
Feature/Task: {feature}

Use this JSON format with 5-10 steps:
{{
  "name": "Flow name",
  "description": "Short description",
  "primaryActor": "User type",
  "goal": "What the user accomplishes",
  "steps": [
    {{"id": 1, "description": "Step", "type": "action" | "decision" | "end",
      "branches": [{{"condition": "If yes", "nextStep": 2}}]}}
  ],
  "mermaidChart": "Mermaid.js flowchart"
}}""",
    ArtifactTool.WIREFRAME: """Specify a wireframe.

{product}
Screen: {screenName}
Purpose: {purpose}

Use this JSON format:
{{
  "screenName": "{screenName}",
  "purpose": "{purpose}",
  "sections": [
    {{
      "name": "Header, Hero, Navigation, Content, Footer, ...",
      "content": "What appears here",
      "interactiveElements": ["Button: Label", "Input: Placeholder"],
      "states": ["Default", "Loading", "Empty", "Error"],
      "notes": "Validation rules and behaviour"
    }}
  ],
  "reactCode": "React component using Tailwind CSS, without imports"
}}""",
    ArtifactTool.COMPONENT: """Specify a UI component.

Component: {componentName}
Purpose: {purpose}

Use this JSON format:
{{
  "name": "{componentName}",
  "purpose": "{purpose}",
  "props": [{{"name": "propName", "type": "string", "description": "What it does"}}],
  "variants": ["primary", "secondary", "ghost"],
  "states": ["default", "hover", "focus", "disabled", "loading"],
  "accessibilityNotes": "ARIA roles and keyboard support",
  "reactCode": "React component using Tailwind CSS, without imports"
}}""",
    ArtifactTool.MICROCOPY: """Write UX microcopy.

Context: {context}
Element: {element}

Use this JSON format:
{{
  "context": "{context}",
  "element": "{element}",
  "variations": [{{"text": "Option", "rationale": "Why it works"}}],
  "bestPractices": ["Practice 1", "Practice 2"]
}}""",
    ArtifactTool.SWOT_ANALYSIS: """Run a SWOT analysis.

Subject: {subject}
Context: {context}

Use this JSON format:
{{
  "strengths": ["S1", "S2"],
  "weaknesses": ["W1", "W2"],
  "opportunities": ["O1", "O2"],
  "threats": ["T1", "T2"],
  "strategy": "Strategic recommendation"
}}""",
    ArtifactTool.COLOR_PALETTE: """Propose a brand color palette.

Brand Mood: {mood}
Industry: {industry}

Use this JSON format:
{{
  "mood": "{mood}",
  "industry": "{industry}",
  "primary": {{"name": "Color name", "hex": "#000000", "usage": "When to use"}},
  "secondary": {{"name": "Color name", "hex": "#000000", "usage": "When to use"}},
  "accent": {{"name": "Color name", "hex": "#000000", "usage": "When to use"}},
  "neutrals": [{{"name": "Background", "hex": "#FFFFFF"}}],
  "semantic": {{"success": "#00AA00", "warning": "#FFAA00", "error": "#FF0000", "info": "#0066FF"}},
  "rationale": "Why these colors fit"
}}""",
}

_INPUTS = {
    ArtifactTool.PERSONA: ("description",),
    ArtifactTool.JTBD: ("userType",),
    ArtifactTool.JOURNEY: ("goal",),
    ArtifactTool.FLOW: ("feature",),
    ArtifactTool.WIREFRAME: ("screenName", "purpose"),
    ArtifactTool.COMPONENT: ("componentName", "purpose"),
    ArtifactTool.MICROCOPY: ("context", "element"),
    ArtifactTool.SWOT_ANALYSIS: ("subject", "context"),
    ArtifactTool.COLOR_PALETTE: ("mood", "industry"),
}


def build_artifact_prompt(
    tool: ArtifactTool,
    inputs: Mapping[str, str],
    context: Optional[Mapping[str, Any]] = None,
) -> str:
    """Render the user prompt for ``tool``; missing inputs become empty strings."""
    values = {name: str(inputs.get(name, "")) for name in _INPUTS[tool]}
    values["product"] = _product_header(context or {})
    prompt = _TEMPLATES[tool].format(**values)
    return f"{prompt}\n\nRespond ONLY with the JSON object, no additional text."


def artifact_request(
    tool: ArtifactTool,
    inputs: Mapping[str, str],
    context: Optional[Mapping[str, Any]] = None,
    model_hint: Optional[ModelDescriptor] = None,
) -> GenerationRequest:
    return GenerationRequest.chat(
        [
            {"role": "system", "content": ARTIFACT_SYSTEM_PROMPT},
            {"role": "user", "content": build_artifact_prompt(tool, inputs, context)},
        ],
        model_hint=model_hint,
    )


class ReformattingAdapter(ProviderAdapter):
    """
    Wraps a chat adapter so each attempt must yield a parseable artifact.

    On a parse failure the same model is asked once to reformat its answer.
    If that also fails the attempt is reported as an UPSTREAM error, which
    makes the orchestrator fall back to the next model. Successful
    responses carry the normalized JSON as their content.
    """

    def __init__(self, inner: ProviderAdapter, reformat_attempts: int = 1):
        self.inner = inner
        self.reformat_attempts = reformat_attempts

    async def invoke(self, request: GenerationRequest, model: ModelDescriptor) -> ProviderResponse:
        response = await self.inner.invoke(request, model)
        latency_ms = response.latency_ms
        tokens = response.tokens_used

        reformats_left = self.reformat_attempts
        while True:
            try:
                artifact = parse_structured_artifact(response.content)
            except ArtifactParseError as e:
                if reformats_left <= 0:
                    raise AdapterError(ErrorKind.UPSTREAM, f"Unusable artifact from {model.id}: {e}") from e
                reformats_left -= 1
                logger.warning(f"Artifact from {model.id} did not parse ({e}), asking to reformat")
                followup = GenerationRequest(
                    modality=request.modality,
                    messages=request.messages + (
                        Message(role="assistant", content=response.content),
                        Message(role="user", content=REFORMAT_PROMPT),
                    ),
                    model_hint=request.model_hint,
                    parameters=request.parameters,
                )
                response = await self.inner.invoke(followup, model)
                latency_ms += response.latency_ms
                if response.tokens_used is not None:
                    tokens = (tokens or 0) + response.tokens_used
                continue

            return ProviderResponse(
                content=json.dumps(artifact),
                latency_ms=latency_ms,
                tokens_used=tokens,
                raw=artifact,
            )

    async def close(self) -> None:
        await self.inner.close()
