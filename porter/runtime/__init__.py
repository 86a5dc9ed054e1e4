"""In-process execution of manifest actions."""

from porter.runtime.resolver import DependencyContext, RuntimeManifest
from porter.runtime.runtime import BundleRuntime

__all__ = ["BundleRuntime", "DependencyContext", "RuntimeManifest"]
