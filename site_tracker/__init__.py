"""Site Tracker: per-site browsing time sessions and daily rollups."""
