"""
Central constants for the opsdesk application.
"""
from __future__ import annotations

# Suggested system categories (free-form; shown as hints in the UI)
SUGGESTED_CATEGORIES = ("Sales", "Operations", "Marketing", "HR", "Finance", "Customer Success")

# Permission keys seeded by scripts/init_db.py
SYSTEM_PERMISSIONS = {
    "systems.view": "Systems: view",
    "systems.create": "Systems: create",
    "systems.edit": "Systems: edit",
    "systems.delete": "Systems: delete",
    "systems.assign": "Systems: assign users",
    "systems.acknowledge": "Systems: acknowledge",
    "systems.comment": "Systems: comment",
}
