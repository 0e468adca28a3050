"""State engine: context briefs, completion parsing and plan output handling."""
