import ssl
from cryptography import x509
from cryptography.hazmat.backends import default_backend
from .logger import log_error


def build_server_ssl_context(cert_file: str, key_file: str) -> ssl.SSLContext:
    """
    Build the TLS context used by the HTTPS listener.

    Certificate provisioning happens elsewhere; this only loads what is
    already on disk.
    """
    ssl_context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    ssl_context.minimum_version = ssl.TLSVersion.TLSv1_2
    ssl_context.load_cert_chain(certfile=cert_file, keyfile=key_file)
    return ssl_context


def extract_common_name(cert_file: str) -> str:
    """
    Extract the subject CN from a PEM certificate.

    Returns:
        str: The CN field, or "UNKNOWN" if it cannot be read
    """
    try:
        with open(cert_file, "rb") as f:
            cert = x509.load_pem_x509_certificate(f.read(), default_backend())

        for attribute in cert.subject:
            if attribute.oid == x509.oid.NameOID.COMMON_NAME:
                return attribute.value

        log_error(f"No CN field in certificate subject: {cert_file}")
        return "UNKNOWN"
    except (OSError, ValueError) as e:
        log_error(f"Failed to read certificate {cert_file}: {e}")
        return "UNKNOWN"
