"""
Optional protocol extensions.

- dpop: DPoP proofs, JWK thumbprints and nonce stores (RFC 9449)
- par:  Pushed Authorization Requests (RFC 9126)
- jar:  JWT-Secured Authorization Requests (RFC 9101)

PAR and JAR helpers plug into AuthenticationRedirector as request senders.
"""
