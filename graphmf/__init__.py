"""
Incremental matrix-factorisation training engine.

Modules are grouped into data access (id spaces, feature cache, interaction
graph), model definitions (parameter stores and update rules), training
pipelines, evaluation, and utilities.
"""
