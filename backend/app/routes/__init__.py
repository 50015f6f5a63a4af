# Routes package init
"""
SiteSurvey Backend — API Routes Package
=========================================

Route Inventory:
    - dealers.py:  /dealers            dealer CRUD + search
    - surveys.py:  /surveys            survey submission, search, lookup, delete
    - forms.py:    /forms/{dealer_id}  public survey form flow
    - files.py:    /files/{path}       stored-file proxy
    - health.py:   /health             service health check

Routes stay THIN: pull data out of the request, call one service method,
return its response model. Business rules live in app/services.
"""
