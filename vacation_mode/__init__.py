"""
Vacation Mode - Anwesenheitssimulation fuer Home Assistant.

Lernt das Wochenmuster getrackter Lichter/Schalter und spielt es bei
Abwesenheit eine Woche (Testmodus: eine Stunde) spaeter wieder ab.
"""

__version__ = "1.0.0"
