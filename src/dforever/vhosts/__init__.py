"""Virtual hosts: derivation, reconciliation and per-site request handling."""
