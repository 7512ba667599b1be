"""
Main entry point for running tally_xml_importer as a module.

Usage:
    python -m tally_xml_importer [options]
"""
import sys
from .cli import main

if __name__ == "__main__":
    sys.exit(main())
