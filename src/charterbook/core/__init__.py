"""Booking policy core: policy rules, availability builder, resolver, engine."""
