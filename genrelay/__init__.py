"""
Generation Relay

Orchestrates AI generation across pools of interchangeable free-tier
models and relays streamed replies to clients.

Components:
- sse: Provider stream decoding and outbound SSE framing
- provider_client: Chat-completions and inference adapters
- pool: Ordered model pools with an affinity cursor
- generation_loop: Fallback orchestration (blocking and streaming)
- state: Generation progress state machine
- history: Best-effort history recording
- artifacts: Structured JSON artifact prompts and parsing
- service: Caller-facing entry points
- api: HTTP endpoints
"""

__version__ = "0.1.0"
