"""Storage layout model, importer and compatibility comparator.

Implements:
  - Typed storage layout models derived from compiler output
  - ERC-7201 namespaced storage roots
  - Positional layout comparison with gap-array accounting
  - Human-readable compatibility reports
"""
