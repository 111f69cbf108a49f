"""Core (UI-agnostic) dashboard logic.

This package contains:
- request deadlines and cancellation signals
- YearMonth parsing and monthly tab discovery
- the monthly snapshot index and snapshot summaries
- the Google Sheets tab source
"""
