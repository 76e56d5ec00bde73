"""
Restaurant decision engine.

Responsibilities:
- Weighted random picks that favour restaurants not chosen recently.
- Ranked-choice voting with positional points and deterministic tie-breaks.
- The decision lifecycle: who may vote, complete or close, and when.
"""
