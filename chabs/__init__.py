"""
CHABS Inventory — storage and sync core

Packages:
    core/       Configuration, logging, paths, errors, schemas, sessions, timers
    storage/    Record store, local / remote providers, sync coordinator
    api/        Cloud backend Flask blueprint
    documents/  Quotation and order PDFs
"""

__version__ = "2.0.0"
