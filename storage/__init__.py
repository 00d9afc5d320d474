"""
Storage Package.

This package manages all account store persistence.

Modules:
- models/: ORM entities and their validate() rules
- schemas: request DTOs, pagination and filter sets
- repositories/: data access layer
- balance: the Balance Mutator
- trading_log_processor: trading logs with balance postings
- database: engine, sessions and schema bootstrap
- unit_of_work: per-request repository bundle
- account_lifecycle: account export and teardown
"""
