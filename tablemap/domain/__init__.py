"""Domain layer: naming rules, schema reflection and the pure query builder.

Nothing here touches a connection.
"""
