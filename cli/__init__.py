"""branchchat command-line front-end."""
