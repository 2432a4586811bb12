"""Insights - batch analysis of session history into actionable suggestions"""
