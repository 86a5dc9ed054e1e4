"""CNAB bundle model: OCI references, bundle descriptors and extensions."""

from porter.cnab.bundle import BundleDescriptor, ExtendedBundle, load_bundle
from porter.cnab.reference import OCIReference, parse_oci_reference

__all__ = [
    "BundleDescriptor",
    "ExtendedBundle",
    "OCIReference",
    "load_bundle",
    "parse_oci_reference",
]
