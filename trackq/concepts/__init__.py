"""Concepts - user corrections and suggestion review"""
