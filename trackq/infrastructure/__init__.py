"""Infrastructure - settings, environment, secrets, database"""
