"""
Remote Watch - Engine Package

Lazy-loading module: the channel stack (websockets, httpx) is only
imported when a symbol that needs it is actually used. The pure
completion logic (engine.types, engine.machine, engine.noise) can be
imported and tested without touching the network layer.

Light imports (no channel dependency):
  - engine.types: Phase, CompletionReason, Observation, MonitorConfig, CompletionResult
  - engine.machine: MonitorState, step, conclude
  - engine.noise: PatternNoiseClassifier, filter_candidate

Heavy imports (require the channel package):
  - engine.probes: ProbeSet, Probes
  - engine.session: MonitorSession, SessionCallbacks
  - engine.dispatch: Dispatcher
"""

# Light imports, always available
from engine.types import (
    Phase, CompletionReason, Observation, MonitorConfig,
    CompletionResult, CompletionTimeout, QuotaExceeded,
)
from engine.machine import MonitorState, Transition, Verdict, step, conclude
from engine.noise import NoiseRule, PatternNoiseClassifier, filter_candidate


def __getattr__(name):
    """Lazy-load symbols that pull in the channel stack."""
    _probe_symbols = {"ProbeSet", "Probes"}
    if name in _probe_symbols:
        import engine.probes as _probes
        return getattr(_probes, name)

    _session_symbols = {"MonitorSession", "SessionCallbacks"}
    if name in _session_symbols:
        import engine.session as _session
        return getattr(_session, name)

    if name == "Dispatcher":
        import engine.dispatch as _dispatch
        return _dispatch.Dispatcher

    raise AttributeError(f"module 'engine' has no attribute {name!r}")
