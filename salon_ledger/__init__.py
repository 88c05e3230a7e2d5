"""Balance ledger and gift-card service for the salon backend."""
