"""
Swap execution pipeline: unit conversion, quotes, transaction building,
submission and the orchestrating state machine.
"""
