# streamlit_app.py
"""Main entry point for Streamlit app."""

import sys
from pathlib import Path

# Make the tradeledger package importable without installation
sys.path.insert(0, str(Path(__file__).parent))

from tradeledger.ui import app

if __name__ == "__main__":
    app  # Import triggers Streamlit execution
