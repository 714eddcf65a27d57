"""
cisflow: declarative build orchestration for CIS-hardened EKS images and clusters.
"""

__version__ = "0.1.0"
