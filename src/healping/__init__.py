"""HealPing portal: auth/session synchronization and role-based route guarding"""

__version__ = "1.0.0"
