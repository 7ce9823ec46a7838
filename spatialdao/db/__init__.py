"""
Persistence plumbing: session factories, per-thread sessions, criteria
composition and spatial column types.
"""
