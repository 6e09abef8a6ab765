"""L402 macaroons, caveats, tokens, token storage, headers and interceptors."""