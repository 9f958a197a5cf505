"""Call flows: the step tree and its execution.

models.py: step tree model (camelCase JSON, nested branches)
validator.py: terminal-step and unique-id checks
interpreter.py: step → TwiML compiler driven by webhooks
"""

__all__ = [
    "audio",
    "interpreter",
    "models",
    "schedule",
    "twiml",
    "validator",
]
