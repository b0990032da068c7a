"""Root pytest configuration (kept intentionally minimal).

The application package lives in ``backend/receiptgold``. Because the pytest
rootdir is the backend directory, Python can already discover the
``receiptgold`` package without path manipulation as long as we avoid having
an ``__init__`` at the backend root.
"""

# Intentionally no path mangling here.
