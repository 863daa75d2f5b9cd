"""Prompt builders for the completion backend."""

from ..memory.models import VisionObservation

SYSTEM_PROMPT = """You are Soma, a calm desktop co-worker.

You help the user with whatever is on their screen and in the conversation.
Answer briefly and concretely. If you are not sure about something, say so.
Never claim to know who a person in a screenshot is unless the user told you."""

VISION_PROMPT_BASE = """You are Soma, a calm desktop co-worker.
This is a screenshot of my screen.
{window_line}
Rules:
- Do NOT describe obvious UI.
- If no error is visible, say so briefly.
- Speak in ONE short sentence.
- Then give up to TWO concrete next actions.
- No hedging, no explanations."""


def build_vision_prompt(window_title: str = "") -> str:
    """Build the screenshot analysis prompt, naming the active window if known."""
    window_line = f'Active window: "{window_title}".\n' if window_title else ""
    return VISION_PROMPT_BASE.format(window_line=window_line)


def build_screen_context(observation: VisionObservation | None) -> str:
    """Describe the last screenshot for inclusion in a chat prompt."""
    if observation is None:
        return ""
    return (
        "\n\n[Recent screen]\n"
        f"Window: {observation.window_title or 'unknown'}\n"
        f"Summary: {observation.vision_summary}\n"
    )


def build_chat_prompt(prompt_with_history: str, observation: VisionObservation | None) -> str:
    """Append recent screen context to a (possibly history-prefixed) prompt."""
    return prompt_with_history + build_screen_context(observation)
