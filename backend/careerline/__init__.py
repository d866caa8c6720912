"""Careerline timeline, sharing and node permission backend."""
