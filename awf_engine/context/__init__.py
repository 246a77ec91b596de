"""Bundle context building blocks: token estimation, compaction, slice policy, NPC collection, injection."""
