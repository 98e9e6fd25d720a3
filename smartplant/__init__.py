"""SmartPlant observation ingestion and moderation service."""
