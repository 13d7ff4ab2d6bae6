from __future__ import annotations

from .template import load_default_system_prompt, render_prompt_template

__all__ = ["load_default_system_prompt", "render_prompt_template"]
