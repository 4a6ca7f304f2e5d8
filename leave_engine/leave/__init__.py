"""Leave module — configuration, balances, ledger, requests and reconciliation."""
