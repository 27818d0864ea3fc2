"""Pure builders for desired cluster objects.

Builders take the parsed service, the resolved runtime and the immutable
serving configuration and return plain dict bodies. They never talk to the
cluster.
"""
