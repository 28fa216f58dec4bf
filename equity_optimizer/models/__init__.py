"""Scoring, selection and portfolio domain models."""
