"""Administrative routers."""
