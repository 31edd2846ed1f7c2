"""Domain services: persistence, Stripe adapter, checkout and reconciliation."""
