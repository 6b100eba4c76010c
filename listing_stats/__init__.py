"""Sponsored listing counters with write-behind impression/click batching"""
