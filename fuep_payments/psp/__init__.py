"""Payment service providers: adapter interface, gateway adapters and the registry."""
