"""Booking Auto-Responder — answers web-widget and WhatsApp messages for a
business from its own documents while tracking booking progress.

Architecture Overview
=====================

Each inbound message is one **turn**, run through a LangGraph StateGraph
(``src/orchestrator.py``):

1. **load_config** — tenant documents, persona and WhatsApp credentials.
2. **update_state** — resolve the day (tenant time zone) and advance the
   deterministic booking state machine; the new state is saved at once.
3. **fetch_context** — embed the message and pull the top-K document chunks
   (best-effort: failures degrade to "no context").
4. **build_prompt** — tenant persona + document rules + day + booking
   progress + context, plus the recent history window.
5. **generate** — Anthropic chat model, full or streamed.
6. **dispatch** — WhatsApp gateway, or inline for the web widget.
7. **persist** — append the exchange and mark the inbound message responded.

Key Design Decisions
--------------------
- **Deterministic state, generative replies**: booking slots (group size,
  date, time) are extracted by rules, never by the LLM, so the prompt can
  tell the model exactly what is still missing.
- **Never go silent**: only invalid input and missing tenant config stop a
  turn before generation; everything else degrades to a friendly fallback.
- **Injected collaborators**: stores, embedder, generator and dispatchers are
  protocols (``src/interfaces.py``), so the pipeline is tested with fakes.

Package Structure
-----------------
- ``src/orchestrator.py`` — turn pipeline (LangGraph)
- ``src/state_engine.py`` — booking slot-filling state machine
- ``src/day_resolver.py`` — "today" and explicit day detection
- ``src/retrieval.py`` — best-effort context aggregation
- ``src/prompts.py`` — system prompt composition
- ``src/fallbacks.py`` — friendly fallback replies, language detection
- ``src/models.py`` / ``src/errors.py`` — data model and error taxonomy
- ``src/config.py`` — centralized configuration from environment variables
- ``src/services/`` — Anthropic, fastembed, Supabase, WhatsApp, metrics
- ``src/api/`` — FastAPI routes and Pydantic schemas
- ``src/server.py`` / ``src/main.py`` — API server and CLI chat
"""
