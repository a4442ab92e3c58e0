"""
formulabench: reactive row-calculation engine for formula verification.

Stores editable cell values, validates rows against nested factor-type
schemas, compiles and caches formula artifacts, and recalculates rows as
cells change, with an audit trail of every update and calculation.
"""

__version__ = "0.1.0"
