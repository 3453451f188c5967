"""
Systems module (SOP documents).

- Systems carry a version that only moves on substantive edits
- Assigned users acknowledge a specific version; a bump makes them re-acknowledge
- Links and comments hang off a system; every mutation is audited
"""
