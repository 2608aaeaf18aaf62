"""
Entitlement resolution engine.

Pure, synchronous evaluation over immutable snapshots:

- models: reference data, overrides, consumption records, response models.
- catalog: benefit/event definitions, tier packages and tier allocations.
- overrides: organization overrides with exact-year-beats-evergreen lookup.
- resolver: tier default + override -> effective entitlement.
- ledger: consumption aggregation per benefit-year and per event field.
- balance: remaining-balance views and visibility rules.
- snapshot: bundles the rows of one evaluation and builds the above.
"""
