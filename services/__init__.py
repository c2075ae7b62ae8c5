"""Tallyman services.

- ledger: LedgerStore (durable store, only writer of balances)
- mirror: MirrorSync (eventually-consistent mirror)
- compensation: CompensationHandler (rollback after mirror failure)
- notifications: tier-change dispatch
- coordinator: LedgerCoordinator (ApplyDelta state machine)
- reconciliation: divergence detection and repair
"""
