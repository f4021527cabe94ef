"""droid-reaper: allow/deny-list process governance for rooted Android devices."""
