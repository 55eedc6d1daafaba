"""core/ -- Kernel package: settings, error taxonomy.

Layer rule: core/ imports nothing from the rest of the project.
"""
