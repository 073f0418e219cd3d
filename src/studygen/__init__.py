"""Study material generation: queued requests, Gemini-backed generation, credits."""

__version__ = "0.1.0"
