"""Componentes puros del núcleo de escrutinio.

English: Pure components of the tally core.
"""
