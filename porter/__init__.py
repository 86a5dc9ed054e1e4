"""porter: package, install and manage the lifecycle of CNAB bundles.

Bundles are built from a ``porter.yaml`` manifest whose steps are run by
mixins, small executables that speak a stdin/stdout protocol. Installations,
their runs, results and outputs are recorded in a document store.
"""

__version__ = "1.2.0"
