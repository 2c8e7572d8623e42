"""HTTP control plane for the scraping engine."""
