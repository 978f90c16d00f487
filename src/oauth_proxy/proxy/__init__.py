"""Request transformation, upstream forwarding and response relay."""
