"""Cloud providers: adapters over each provider API and the drivers that run setup on them."""
