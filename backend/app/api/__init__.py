from . import admin_endpoints, auth_endpoints

__all__ = [
	"auth_endpoints",
	"admin_endpoints",
]
