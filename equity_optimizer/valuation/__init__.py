"""Discounted cash flow valuation."""
