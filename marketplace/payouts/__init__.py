"""
Retraits vendeurs (payouts).
Solde, demande de retrait avec décaissement mobile money et callback du fournisseur.
"""
