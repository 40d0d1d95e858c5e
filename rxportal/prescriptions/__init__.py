"""Prescription and refill lifecycle rules."""
