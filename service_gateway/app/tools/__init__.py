"""
Tool definitions, the versioned registry and manifest loading.
"""
