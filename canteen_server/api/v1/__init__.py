"""v1 routers."""
