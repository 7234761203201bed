"""Credit-card statement import and bill-payment reconciliation."""
