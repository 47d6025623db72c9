"""Global determinism settings for inference calls.

Every component that talks to the inference endpoint spreads one of these
dicts into its payload so identical inputs produce identical prompts and,
as far as the model allows, identical answers.
"""

# Fixed seed reserved for any future PRNG usage.
SEED: int = 42

# Scanner: fully deterministic sampling.
LLM_TEMPERATURE: float = 0.0
LLM_TOP_P: float = 1.0  # Gemini requires top_p > 0; 1.0 is default / neutral

# Engineer: a little room to produce a rewrite that differs from the input.
FIX_TEMPERATURE: float = 0.1

# NOTE: Gemini's OpenAI-compatible API does not support the ``seed``
# parameter and rejects ``top_p=0.0``.
LLM_DETERMINISTIC_PARAMS: dict[str, object] = {
    "temperature": LLM_TEMPERATURE,
    "top_p": LLM_TOP_P,
}
