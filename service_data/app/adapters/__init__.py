"""
Data service adapters.

HTTP clients for external collaborators; currently the Pocketbase record
store that backs every cached read and write.
"""
