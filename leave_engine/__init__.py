"""Leave Engine — accrual, ledger and approval-workflow service."""
