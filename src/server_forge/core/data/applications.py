"""
L0 Data — Application recipes for package-based deployment.

Each recipe lists the packages to install and the service to enable,
per package-manager family. ``web_extras`` are added on web servers.
"""

from __future__ import annotations

APPLICATION_RECIPES: dict[str, dict] = {
    "nginx": {
        "packages": {"apt": ["nginx"], "yum": ["nginx"], "dnf": ["nginx"]},
        "service": {"apt": "nginx", "yum": "nginx", "dnf": "nginx"},
    },
    "apache": {
        "packages": {"apt": ["apache2"], "yum": ["httpd"], "dnf": ["httpd"]},
        "service": {"apt": "apache2", "yum": "httpd", "dnf": "httpd"},
    },
    "mysql": {
        "packages": {"apt": ["mysql-server"], "yum": ["mysql-server"], "dnf": ["mysql-server"]},
        "service": {"apt": "mysql", "yum": "mysqld", "dnf": "mysqld"},
    },
    "postgresql": {
        "packages": {
            "apt": ["postgresql", "postgresql-contrib"],
            "yum": ["postgresql-server", "postgresql-contrib"],
            "dnf": ["postgresql-server", "postgresql-contrib"],
        },
        "service": {"apt": "postgresql", "yum": "postgresql", "dnf": "postgresql"},
    },
    "php": {
        "packages": {
            "apt": ["php", "php-fpm", "php-mysql"],
            "yum": ["php", "php-fpm", "php-mysqlnd"],
            "dnf": ["php", "php-fpm", "php-mysqlnd"],
        },
        "web_extras": {"apt": ["libapache2-mod-php"], "yum": [], "dnf": []},
        "service": {"apt": "php-fpm", "yum": "php-fpm", "dnf": "php-fpm"},
    },
    "python": {
        "packages": {
            "apt": ["python3", "python3-pip", "python3-venv"],
            "yum": ["python3", "python3-pip"],
            "dnf": ["python3", "python3-pip"],
        },
    },
    "nodejs": {
        "packages": {"apt": ["nodejs", "npm"], "yum": ["nodejs", "npm"], "dnf": ["nodejs", "npm"]},
    },
}

ESSENTIAL_PACKAGES: list[str] = ["curl", "wget", "vim", "firewall"]

MONITORING_PACKAGES: list[str] = ["prometheus", "node_exporter", "grafana"]
