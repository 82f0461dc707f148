"""Triage - summarize, filter, decide and notify for arrival batches"""
