#!/usr/bin/env python3
"""Запуск ShipBot из исходников: python run.py serve."""
from shipbot.cli import main

if __name__ == "__main__":
    main()
