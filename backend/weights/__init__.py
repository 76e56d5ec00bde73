"""
Selection weights.

Responsibilities:
- Track how often and how recently each restaurant was picked per collection.
- Turn that history into a recency-decayed weight for random selection.
"""
