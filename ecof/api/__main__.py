"""
Run the operational API.

    python -m ecof.api
"""

from .main import main

if __name__ == "__main__":
    main()
