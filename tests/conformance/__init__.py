"""
Conformance Test Suite

Normative behaviour of the bonding engine, organised by invariant:
1. test_fee_conservation.py - Fee splits and payouts never leak a base unit
2. test_bond_invariants.py - Caps, one record per account, custody matches the book
3. test_engine_atomicity.py - Failed engine operations leave no trace

These tests use hypothesis for property-based testing.
"""
