"""
Aura - a spoken, turn-based AI companion.

Captures speech, transcribes it, generates a reply and speaks it back,
keeping every stage moving through provider fallback chains. Sessions are
stored locally first and reconciled with a remote store.
"""

__version__ = "1.0.0"
