"""
pipeline-manifold: a supervised tree of processes connected by byte pipes.

One input source (the program's stdin or a spawned command) feeds a
fan-out / fan-in graph of spawned programs. Stages that die unexpectedly
are respawned and re-attached to the graph.
"""

__version__ = "0.1.0"
