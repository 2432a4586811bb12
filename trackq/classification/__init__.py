"""Classification - project matching and the categorizer"""
