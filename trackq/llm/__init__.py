"""LLM - remote classifier gateway and prompt templates"""
