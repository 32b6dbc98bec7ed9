"""ClubHub asynchronous job core."""
