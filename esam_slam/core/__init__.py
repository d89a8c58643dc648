"""
Graph manager core: symbols, the spatial and estimation graphs, candidate
search, correspondence gating and optimization.
"""
