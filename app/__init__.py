"""Background workers for the provisioning engine."""
