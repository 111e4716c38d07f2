"""Authorization layer: role checks for the admin back-office."""
