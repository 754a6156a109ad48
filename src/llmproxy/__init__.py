"""Per-alias reverse proxies for language-model backends.

A registry of model aliases (alias -> backend URL + real model name) and a
router that starts one private OpenAI-compatible listener per alias, rewriting
the request ``model`` field and relaying responses (including streams).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
