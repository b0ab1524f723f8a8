"""
schemas/ — Pydantic request/response models for the engine's HTTP surface
"""
