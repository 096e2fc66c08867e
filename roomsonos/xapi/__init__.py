from .client import XapiClient, XapiError, split_path

__all__ = ["XapiClient", "XapiError", "split_path"]
