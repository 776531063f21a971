"""Built-in features shipped with featurebot."""
