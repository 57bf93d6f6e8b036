"""
Prompt Management Module

Loads LLM prompt text from the .txt files next to this module so wording can
be tuned without touching the builder code.

Files:
- system_base.txt: shared system prompt ({context_block}, {focus}, {temporal_guidance})
- output_format.txt / output_format_strict.txt: JSON answer shape
- focus_<template>.txt: analysis focus per data-source template
- instructions_<mode>.txt: user prompt instructions per analysis mode
- chunk_summary.txt: per-window summary header used in progressive analysis
"""

from __future__ import annotations

from pathlib import Path

PROMPTS_DIR = Path(__file__).parent


class PromptLoader:
    """Load and cache prompt templates from files"""

    def __init__(self, prompts_dir: Path = PROMPTS_DIR):
        self.prompts_dir = prompts_dir
        self._cache: dict[str, str] = {}

    def load_prompt(self, prompt_name: str) -> str:
        """
        Load a prompt template from file.

        Args:
            prompt_name: Name of the prompt file (without .txt extension)

        Returns:
            Prompt template string, trailing whitespace stripped

        Raises:
            FileNotFoundError: If no such prompt file exists
        """
        if prompt_name not in self._cache:
            prompt_path = self.prompts_dir / f"{prompt_name}.txt"

            if not prompt_path.exists():
                raise FileNotFoundError(f"Prompt file not found: {prompt_path}")

            with open(prompt_path, encoding="utf-8") as f:
                self._cache[prompt_name] = f.read().rstrip()

        return self._cache[prompt_name]

    def get_system_prompt(self, **kwargs: str) -> str:
        """
        Get the shared system prompt with variables injected.

        Args:
            context_block: Period, team size, repositories, channels, chunk info
            focus: Template-specific analysis focus
            temporal_guidance: One sentence on how to treat timing
        """
        return self.load_prompt("system_base").format(**kwargs)

    def get_focus(self, template: str) -> str:
        return self.load_prompt(f"focus_{template}")

    def get_output_format(self, strict: bool = False) -> str:
        return self.load_prompt("output_format_strict" if strict else "output_format")

    def get_instructions(self, mode: str) -> str:
        return self.load_prompt(f"instructions_{mode}")

    def get_chunk_summary_header(self) -> str:
        return self.load_prompt("chunk_summary")

    def reload(self) -> None:
        """Clear cache and reload prompts from disk"""
        self._cache.clear()


# Global instance
_loader = PromptLoader()


def get_loader() -> PromptLoader:
    return _loader


def reload_prompts() -> None:
    """Reload all prompts from disk (convenience function)"""
    _loader.reload()
