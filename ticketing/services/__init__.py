"""
Business logic. Services are plain classes with async methods, wired
together by the Application and handed to the controllers.
"""
