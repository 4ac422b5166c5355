"""
Domain runtime: proposal stages, ranking, staleness and the CirclesCore
facade. Import submodules directly; this package re-exports nothing so the
storage layer can depend on the models without a cycle.
"""
