"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the leverage loop engine.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. sizer_safety.py - Increments never breach ltv or the minimum health factor
2. leverage_monotonicity.py - More leverage never yields a smaller position
3. atomicity.py - All-or-nothing loops and unwinds
4. batch_isolation.py - Batch elements succeed or fail independently
5. conservation.py - Double-entry and market-book invariants

These tests use hypothesis for property-based testing.
"""
