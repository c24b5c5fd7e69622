"""
Reconciliation package.

Modules of interest:
- precedence: pure decision function over a snapshot of facts.
- reconciler: owns the facts and serializes every recomputation.
"""
